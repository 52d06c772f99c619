"""Mechiee dispatch-and-room coordinator."""
