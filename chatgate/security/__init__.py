"""Access control for chatgate: pairing, API keys and input screening."""
