"""Signaling and session orchestration for selective forwarding media servers."""
