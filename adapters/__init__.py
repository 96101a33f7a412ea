"""Concrete collaborators for the pulseguard services: storage, transport, contacts, network."""
