"""Persistent storage for activities and derived artifacts."""

from .store import CustomMatchUpdate, TrackInput, TrackStore

__all__ = ["CustomMatchUpdate", "TrackInput", "TrackStore"]
