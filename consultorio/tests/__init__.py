"""
Tests for the Consultorio booking service

Test suite covering:
- TTL cache and retry policy
- Availability gateway and fallback data
- Sobreturno allocation, including concurrent bookings
- Conversation FSM and engine
- API endpoints

Run tests with:
    python -m pytest consultorio/tests/ -v
    python -m pytest consultorio/tests/test_sobreturnos.py -v
"""
