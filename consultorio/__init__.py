"""
Consultorio Booking Service - chat-driven appointment and sobreturno booking

This service books regular appointments and same-day overflow slots
("sobreturnos") for a medical practice through a multi-turn chat
conversation, against a scheduling backend that is often slow or offline.

Key Features:
- Conversation FSM: name -> social work plan -> options -> selection -> booking
- TTL cache and retries with backoff in front of the backend
- Static fallback slots when the backend cannot be reached
- Ten numbered daily sobreturnos, re-validated immediately before booking
- Redis-based session persistence (30min TTL)
- Cancellation available at any time ("cancelar")

Architecture:
- FastAPI web framework for the message webhook and admin endpoints
- Redis for session state and metric counters
- httpx for the scheduling backend
- Pure FSM producing effects, executed by the conversation engine
"""

__version__ = "1.0.0"
