"""Tests for application settings."""

import pytest
from pydantic import ValidationError

from app.config import Settings


@pytest.mark.unit
class TestSettings:

    def test_defaults_are_consistent(self):
        settings = Settings(EXECUTION_DISPATCH_TIMEOUT_SECONDS=30, SCHEDULER_CLAIM_TTL_SECONDS=300)
        assert settings.EXECUTION_DISPATCH_TIMEOUT_SECONDS < settings.SCHEDULER_CLAIM_TTL_SECONDS

    @pytest.mark.parametrize("timeout", [300, 600])
    def test_dispatch_timeout_must_be_shorter_than_claim(self, timeout):
        with pytest.raises(ValidationError, match="SCHEDULER_CLAIM_TTL_SECONDS"):
            Settings(EXECUTION_DISPATCH_TIMEOUT_SECONDS=timeout, SCHEDULER_CLAIM_TTL_SECONDS=300)

    def test_production_requires_secret(self):
        settings = Settings(ENVIRONMENT="production", SECRET_KEY="")
        with pytest.raises(RuntimeError, match="SECRET_KEY"):
            settings.validate_secrets()
