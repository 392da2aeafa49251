"""
Nebula Core - progression and economy engines

Three engines share one template catalog and one ledger:
- Upgrade Tree Engine: per-player progress through the upgrade DAG
- Event Trigger Engine: timed and conditional gameplay events
- Market Transaction Engine: offers and escrowed trades

The package knows nothing about HTTP or authentication. Adapters (the
game_api app, the CLI) open a session, call an engine and render the
returned snapshot.
"""
