"""Clients for the remote chat-completion endpoint."""
