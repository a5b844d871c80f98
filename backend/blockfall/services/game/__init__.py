"""Game domain services: pieces, difficulty, validation, sessions, rankings.

This package contains the authoritative game logic that HTTP routes and
socket handlers call into, keeping transport concerns separated from the
anti-cheat rules and the session state machine.
"""
