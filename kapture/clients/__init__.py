"""Clients for the external collaborators: extraction worker and object storage."""
