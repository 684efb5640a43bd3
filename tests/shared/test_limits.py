import pytest

from mcpgate.server.settings import LimitSettings
from mcpgate.shared.errors import ErrorCode
from mcpgate.shared.limits import LimitPolicy


@pytest.fixture
def policy() -> LimitPolicy:
    return LimitPolicy(
        LimitSettings(
            max_request_bytes=100,
            max_tool_runtime_ms=1_000,
            max_search_results=5,
            max_snippet_lines=2,
            max_memory_content_bytes=10,
        )
    )


def test_defaults():
    settings = LimitSettings()
    assert settings.max_request_bytes == 1024 * 1024
    assert settings.max_tool_runtime_ms == 30_000
    assert settings.max_search_results == 100
    assert settings.max_snippet_lines == 200
    assert settings.max_memory_content_bytes == 64 * 1024


def test_settings_accept_camel_case_names():
    settings = LimitSettings.model_validate({"maxRequestBytes": 10, "maxSearchResults": 3})
    assert settings.max_request_bytes == 10
    assert settings.max_search_results == 3


def test_payload_size(policy: LimitPolicy):
    assert policy.check_payload_size(100) is None
    violation = policy.check_payload_size(101)
    assert violation is not None
    error = violation.as_error()
    assert error.envelope.code is ErrorCode.LIMIT_EXCEEDED
    assert error.envelope.details == {"limit": "maxRequestBytes", "max": 100, "observed": 101}


def test_runtime_is_capped_by_maximum(policy: LimitPolicy):
    assert policy.effective_timeout_ms(500) == 500
    assert policy.effective_timeout_ms(5_000) == 1_000
    assert policy.check_runtime(999, 5_000) is None

    violation = policy.check_runtime(1_000, 5_000)
    assert violation is not None
    error = violation.as_error()
    assert error.envelope.code is ErrorCode.TIMEOUT
    assert error.envelope.retryable is True


def test_result_count_truncates_with_flag(policy: LimitPolicy):
    items, truncated = policy.truncate_results(list(range(8)))
    assert items == [0, 1, 2, 3, 4]
    assert truncated is True

    items, truncated = policy.truncate_results(list(range(8)), requested=3)
    assert items == [0, 1, 2]
    assert truncated is True

    items, truncated = policy.truncate_results([1, 2])
    assert items == [1, 2]
    assert truncated is False


def test_truncation_is_not_an_error(policy: LimitPolicy):
    violation = policy.check_result_count(10)
    assert violation is not None
    assert violation.kind == "Truncated"
    with pytest.raises(ValueError):
        violation.as_error()


def test_snippet_lines(policy: LimitPolicy):
    text, truncated = policy.truncate_snippet("a\nb\nc\n")
    assert text == "a\nb\n"
    assert truncated is True
    assert policy.truncate_snippet("a\nb") == ("a\nb", False)


def test_memory_content(policy: LimitPolicy):
    assert policy.check_memory_content(10) is None
    violation = policy.check_memory_content(11)
    assert violation is not None
    assert violation.as_error().envelope.code is ErrorCode.LIMIT_EXCEEDED
