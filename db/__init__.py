"""Relational storage for shows, episodes and transcript metadata."""
