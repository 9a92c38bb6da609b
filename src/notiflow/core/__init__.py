"""Core types, state machine and error taxonomy."""
