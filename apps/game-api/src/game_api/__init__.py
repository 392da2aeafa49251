"""Game API - HTTP adapter over the Nebula engines."""
