"""Recurring subscription billing engine with webhook event delivery."""
