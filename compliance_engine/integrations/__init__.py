"""Outbound adapters for the external collaborators the engine talks to."""
