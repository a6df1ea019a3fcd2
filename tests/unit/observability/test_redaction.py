"""Card-number masking in free text."""

from __future__ import annotations

from hypothesis import given
from hypothesis import strategies as st

from posguard.observability.logging import redact_text


@given(st.text(alphabet="0123456789", min_size=13, max_size=19))
def test_long_digit_runs_are_kept_or_masked_to_last_four(digits: str) -> None:
    assert redact_text(f"ref {digits} end") in {
        f"ref {digits} end",
        f"ref ****{digits[-4:]} end",
    }


def test_short_digit_runs_and_dated_names_are_untouched() -> None:
    text = "backup pos-repair-backup-20260314-092653.db for order 4111111111"

    assert redact_text(text) == text
