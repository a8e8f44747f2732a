"""Listeners, dispatcher and backend proxying."""
