"""
CertVerify Backend — Settings Tests
=====================================

What we test:
    ✅ Environment and log level normalization
    ✅ Route-class budgets built from the flat RATE_LIMIT_* fields
    ✅ Production refuses development secrets and the in-process store
"""

import pytest
from pydantic import ValidationError as PydanticValidationError

from certverify.config import RateBudget, Settings


class TestSettings:
    def test_normalizes_environment_and_log_level(self):
        settings = Settings(environment="TEST", log_level="debug")
        assert settings.environment == "test"
        assert settings.log_level == "DEBUG"

    def test_rejects_unknown_environment(self):
        with pytest.raises(PydanticValidationError):
            Settings(environment="staging")

    def test_cors_origins_list(self):
        settings = Settings(cors_origins=" https://a.example , ,https://b.example")
        assert settings.cors_origins_list == ["https://a.example", "https://b.example"]

    def test_rate_limit_budgets(self):
        settings = Settings(rate_limit_auth_points=3, rate_limit_auth_window=30)
        budgets = settings.rate_limit_budgets
        assert budgets["auth"] == RateBudget(3, 30)
        assert budgets["verification"] == RateBudget(300, 60)
        assert budgets["default"] == RateBudget(100, 60)


class TestProductionValidation:
    def test_development_defaults_refused(self):
        settings = Settings(environment="production", redis_url="memory://")
        with pytest.raises(ValueError) as exc_info:
            settings.validate_required_for_production()
        message = str(exc_info.value)
        assert "CSRF_SECRET" in message
        assert "SIGNING_SECRET" in message
        assert "REDIS_URL" in message

    def test_production_with_real_secrets_passes(self):
        settings = Settings(
            environment="production",
            redis_url="redis://cache:6379/0",
            csrf_secret="a-real-csrf-secret",
            signing_secret="a-real-signing-secret",
        )
        settings.validate_required_for_production()

    def test_non_production_not_checked(self):
        Settings(environment="development", redis_url="memory://").validate_required_for_production()
