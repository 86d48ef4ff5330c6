"""Reels Factory backend."""
