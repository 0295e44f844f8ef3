"""Scheduled jobs, retry policy and the trigger service."""
