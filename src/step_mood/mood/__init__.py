"""Mood arithmetic and named mood bands."""
