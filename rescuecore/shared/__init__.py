"""Shared models, utilities and persistence for rescuecore services."""
