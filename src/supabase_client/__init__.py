"""Supabase adapter for the bookmark backend (Auth, PostgREST and Realtime)."""

from .backend import SupabaseBackend
from .realtime import RealtimeSubscription

__all__ = ["RealtimeSubscription", "SupabaseBackend"]
