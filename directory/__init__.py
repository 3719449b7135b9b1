"""Prekey directory service."""
