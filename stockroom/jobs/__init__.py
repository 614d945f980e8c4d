"""
Background Jobs Module

Handles scheduled tasks for:
- Releasing expired cart reservations
"""
