"""Notification delivery channels."""
