"""chatgate Test Suite

Test organization:
- unit/: Unit tests for individual modules
  - channels/: Adapters, dispatch, gateway, retry and stream queue
  - security/: Pairing, API keys and sanitizer
  - core/: Config loading and engine resolution
- integration/: Webhook routes over the assembled FastAPI app

Running tests:
    # All tests
    pytest

    # Specific module
    pytest tests/unit/security/
"""
