"""Transcript acquisition worker."""
