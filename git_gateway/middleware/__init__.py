"""HTTP middleware."""

from .input_validator import InputValidatorMiddleware, ValidatorConfig

__all__ = ["InputValidatorMiddleware", "ValidatorConfig"]
