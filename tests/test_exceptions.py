"""Tests for afm_chat.exceptions helpers."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from afm_chat.exceptions import (
    AppleFMSetupError,
    ProviderError,
    classify_provider_error,
    ensure_model_available,
    raise_setup_error,
    troubleshooting_message,
)
from afm_chat.models import ChatErrorKind
from afm_chat.protocols import Availability, UnavailableReason


def test_troubleshooting_message_includes_context_reason_and_steps():
    message = troubleshooting_message("example.py", reason="boom")
    assert "[example.py] Apple Foundation Models setup check failed." in message
    assert "Reason: boom" in message
    assert "pip install -e '.[apple]'" in message
    assert "afm-chat doctor" in message


def test_troubleshooting_message_default_label():
    assert troubleshooting_message("  ").startswith("[afm-chat]")


def test_raise_setup_error_chains_cause():
    cause = ModuleNotFoundError("No module named 'apple_fm_sdk'")
    with pytest.raises(AppleFMSetupError, match="No module named 'apple_fm_sdk'") as exc_info:
        raise_setup_error("unit_test", exc=cause)
    assert exc_info.value.__cause__ is cause


def test_ensure_model_available_raises_custom_error_when_unavailable():
    provider = MagicMock()
    provider.availability.return_value = Availability.unavailable(
        UnavailableReason.MODEL_NOT_READY
    )

    with pytest.raises(AppleFMSetupError, match="Foundation Model is not available"):
        ensure_model_available(provider, context="unit_test")


def test_ensure_model_available_wraps_provider_failure():
    provider = MagicMock()
    provider.availability.side_effect = ModuleNotFoundError("No module named 'apple_fm_sdk'")

    with pytest.raises(AppleFMSetupError, match="ModuleNotFoundError"):
        ensure_model_available(provider, context="unit_test")


def test_ensure_model_available_passes_when_available():
    provider = MagicMock()
    provider.availability.return_value = Availability.ok()
    ensure_model_available(provider, context="unit_test")


# ============================================================================
# Provider error classification
# ============================================================================


class ExceededContextWindowSizeError(Exception):
    pass


@pytest.mark.parametrize(
    "exc, kind",
    [
        (ExceededContextWindowSizeError(), ChatErrorKind.CONTEXT_WINDOW_EXCEEDED),
        (RuntimeError("GuardrailViolation: unsafe"), ChatErrorKind.GUARDRAIL_VIOLATION),
        (RuntimeError("unsupportedLanguageOrLocale"), ChatErrorKind.UNSUPPORTED_FEATURE),
        (RuntimeError("decodingFailure"), ChatErrorKind.RESPONSE_DECODING_FAILURE),
        (RuntimeError("assetsUnavailable"), ChatErrorKind.PROVIDER_UNAVAILABLE),
        (TimeoutError(), ChatErrorKind.PROVIDER_UNAVAILABLE),
        (RuntimeError("kaboom"), ChatErrorKind.UNKNOWN),
    ],
)
def test_classify_provider_error(exc, kind):
    assert classify_provider_error(exc).kind is kind


def test_explicit_kind_wins_over_message():
    exc = ProviderError("guardrail tripped", kind=ChatErrorKind.UNKNOWN)
    error = classify_provider_error(exc)
    assert error.kind is ChatErrorKind.UNKNOWN
    assert error.detail == "guardrail tripped"


def test_detail_falls_back_to_type_name():
    assert classify_provider_error(TimeoutError()).detail == "TimeoutError"
