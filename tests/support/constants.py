"""Constants used in test fixtures and setup."""

__all__ = [
    "TEST_BASE_URL",
    "TEST_EMAIL",
    "TEST_PASSWORD",
]

TEST_BASE_URL = "https://algosync.example.com/api/v1"
"""Base URL of the mock AlgoSync API."""

TEST_EMAIL = "someuser@example.com"
"""Email address of the default test user."""

TEST_PASSWORD = "some-password"
"""Password of the default test user."""
