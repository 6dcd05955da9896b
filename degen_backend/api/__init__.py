"""HTTP API for the game client and operators."""
