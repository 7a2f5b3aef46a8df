"""Connectors to external collaborators: server of record, institutions, notifiers."""
