"""Marketplace domain modules."""
