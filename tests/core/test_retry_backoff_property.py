"""Property-based tests for the exponential backoff policy.

**Feature: paysub, Property: Retry backoff**
**Validates: RetryConfig.calculate_delay**
"""

from hypothesis import given, settings, strategies as st

from paysub.core.tasks import RETRY_CONFIGS, RetryConfig


class TestRetryBackoff:
    """**Validates: RetryConfig.calculate_delay**"""

    @given(
        initial=st.floats(min_value=0.1, max_value=10.0),
        multiplier=st.floats(min_value=1.0, max_value=4.0),
        max_delay=st.floats(min_value=10.0, max_value=600.0),
        attempt=st.integers(min_value=1, max_value=30),
    )
    @settings(max_examples=100)
    def test_delay_is_monotonic_and_capped(
        self,
        initial: float,
        multiplier: float,
        max_delay: float,
        attempt: int,
    ) -> None:
        """*For any* policy, delays never shrink and never exceed max_delay."""
        config = RetryConfig(
            max_attempts=30,
            initial_delay=initial,
            max_delay=max_delay,
            backoff_multiplier=multiplier,
        )

        delay = config.calculate_delay(attempt)
        next_delay = config.calculate_delay(attempt + 1)

        assert delay <= max_delay
        assert next_delay >= delay

    def test_first_attempt_uses_initial_delay(self) -> None:
        config = RetryConfig(initial_delay=2.0, max_delay=120.0, backoff_multiplier=2)

        assert config.calculate_delay(0) == 2.0
        assert config.calculate_delay(1) == 2.0
        assert config.calculate_delay(2) == 4.0
        assert config.calculate_delay(3) == 8.0

    def test_payment_method_fetch_policy_is_registered(self) -> None:
        config = RETRY_CONFIGS["payment_method_fetch"]

        assert config.max_attempts >= 1
        assert config.initial_delay > 0
        assert config.max_delay >= config.initial_delay
