"""Collaborator clients: speech service, completion service, usage recording."""
