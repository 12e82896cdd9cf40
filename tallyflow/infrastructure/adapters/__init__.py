"""Adapters for external collaborators (queue service, relational store)."""
