"""Administrative CLI for the Nebula engines."""
