"""Keys that must never reach the logs in clear text.

Provider credentials travel through model specs and settings objects, so the
structured logger redacts any field whose name matches one of these keys.
"""

SENSITIVE_KEYS: set[str] = {
    # Credentials
    "api_key",
    "openai_api_key",
    "anthropic_api_key",
    "gemini_api_key",
    "azure_openai_api_key",
    "secret",
    "token",
    "access_token",
    "authorization",
    "bearer",
    "password",
    # Headers
    "x-api-key",
    "api-key",
    "cookie",
    "set-cookie",
}


def is_sensitive_key(key: str) -> bool:
    """Return True if `key` names a value that must be redacted."""
    normalized = key.strip().lower()
    if normalized in SENSITIVE_KEYS:
        return True
    # Provider-prefixed credentials such as FOO_API_KEY
    return normalized.endswith("_api_key") or normalized.endswith("_token")
