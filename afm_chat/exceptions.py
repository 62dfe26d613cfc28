"""
Error types and diagnostics for afm-chat.

Two families live here:

* setup diagnostics (:class:`AppleFMSetupError` and helpers) raised when the
  Apple Foundation Models SDK or on-device model cannot be used at all;
* provider failures that happen inside a chat turn, which are never raised to
  callers but converted to a :class:`~afm_chat.models.ChatError` by
  :func:`classify_provider_error`.
"""

from __future__ import annotations

from typing import Any, NoReturn

from .models import ChatError, ChatErrorKind

__all__ = [
    "AppleFMSetupError",
    "ConversationDecodeError",
    "ProviderError",
    "classify_provider_error",
    "ensure_model_available",
    "raise_setup_error",
    "troubleshooting_message",
]


class AppleFMSetupError(RuntimeError):
    """Raised when Apple FM SDK/model setup is missing or unavailable."""


class ProviderError(RuntimeError):
    """A failure reported by a model provider, optionally pre-classified."""

    def __init__(self, message: str, kind: ChatErrorKind | None = None) -> None:
        super().__init__(message)
        self.kind = kind


class ConversationDecodeError(ValueError):
    """Raised when a persisted conversation list cannot be decoded."""


def troubleshooting_message(context: str, reason: str | None = None) -> str:
    """Build a standard setup troubleshooting message."""
    label = context.strip() if context.strip() else "afm-chat"
    lines = [f"[{label}] Apple Foundation Models setup check failed."]
    if reason:
        lines.append(f"Reason: {reason}")
    lines.extend(
        [
            "",
            "Troubleshooting checklist:",
            "1. Use macOS 26+ on Apple Silicon (M-series) with Apple Intelligence enabled.",
            "2. Install the SDK extra: pip install -e '.[apple]'",
            "3. Verify SDK import:",
            '   python -c "import apple_fm_sdk as fm; print(fm.__name__)"',
            "4. Verify model availability:",
            '   python -c "import apple_fm_sdk as fm; m=fm.SystemLanguageModel(); print(m.is_available())"',
            "5. Run diagnostics: afm-chat doctor",
        ]
    )
    return "\n".join(lines)


def raise_setup_error(
    context: str,
    *,
    reason: str | None = None,
    exc: BaseException | None = None,
) -> NoReturn:
    """Raise :class:`AppleFMSetupError` with standardized diagnostics."""
    computed_reason = reason
    if computed_reason is None and exc is not None:
        computed_reason = f"{type(exc).__name__}: {exc}"

    error = AppleFMSetupError(troubleshooting_message(context, reason=computed_reason))
    if exc is not None:
        raise error from exc
    raise error


def ensure_model_available(provider: Any, *, context: str) -> None:
    """Validate that a provider reports its model as usable."""
    try:
        availability = provider.availability()
    except Exception as exc:
        raise_setup_error(context, exc=exc)

    if not availability.available:
        raise_setup_error(context, reason=f"Foundation Model is not available: {availability}")


# Checked in order; the first matching marker decides the kind.
_ERROR_MARKERS: tuple[tuple[ChatErrorKind, tuple[str, ...]], ...] = (
    (ChatErrorKind.GUARDRAIL_VIOLATION, ("guardrailviolation", "guardrail", "unsafe content")),
    (
        ChatErrorKind.CONTEXT_WINDOW_EXCEEDED,
        ("exceededcontextwindowsize", "context window size exceeded", "context window"),
    ),
    (
        ChatErrorKind.UNSUPPORTED_FEATURE,
        ("unsupportedguide", "unsupportedlanguageorlocale", "unsupported"),
    ),
    (ChatErrorKind.RESPONSE_DECODING_FAILURE, ("decodingfailure", "decoding failure", "decode")),
    (
        ChatErrorKind.PROVIDER_UNAVAILABLE,
        ("assetsunavailable", "ratelimited", "concurrentrequests", "unavailable", "not ready"),
    ),
)


def classify_provider_error(exc: BaseException) -> ChatError:
    """Convert a provider exception into a user-facing :class:`ChatError`."""
    detail = str(exc) or type(exc).__name__

    kind = getattr(exc, "kind", None)
    if isinstance(kind, ChatErrorKind):
        return ChatError(kind, detail)

    if isinstance(exc, (ConnectionError, TimeoutError)):
        return ChatError(ChatErrorKind.PROVIDER_UNAVAILABLE, detail)

    haystack = f"{type(exc).__name__} {exc}".lower()
    for candidate, markers in _ERROR_MARKERS:
        if any(marker in haystack for marker in markers):
            return ChatError(candidate, detail)
    return ChatError(ChatErrorKind.UNKNOWN, detail)
