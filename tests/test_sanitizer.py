"""Tests for gatekeeper.sanitizer: prompt cleaning and content policies."""
from __future__ import annotations

import pytest

from gatekeeper.errors import SecurityError, SecurityErrorCode
from gatekeeper.sanitizer import (
    build_policy,
    sanitize_prompt,
    strip_markup,
    substring_policy,
    token_policy,
)

TERMS = ["violence", "hate", "暴力"]


@pytest.fixture
def policy():
    return substring_policy(TERMS)


# =====================================================================
# Markup & control characters
# =====================================================================

class TestStripMarkup:
    def test_removes_angle_brackets(self):
        assert strip_markup("<b>cat</b>") == "bcat/b"

    @pytest.mark.parametrize("payload", ["javascript:", "JavaScript:", "data:", "vbscript:"])
    def test_removes_protocol_prefixes(self, payload):
        assert strip_markup(f"{payload}alert(1)") == "alert(1)"

    def test_removes_event_handlers(self):
        assert strip_markup("img onerror=alert(1)") == "img alert(1)"
        assert strip_markup("div ONLOAD = x") == "div  x"

    @pytest.mark.parametrize("payload,expected", [
        ("jajavascript:vascript:alert(1) oonclick=nclick=x", "alert(1) x"),
        ("dadata:ta:x", "x"),
        ("JAVAjavascript:SCRIPT:go", "go"),
        ("oonerror=nerror=1", "1"),
    ])
    def test_nested_payloads_stripped_completely(self, payload, expected):
        assert strip_markup(payload) == expected

    def test_output_is_stable(self):
        once = strip_markup("jajavascript:vascript:alert(1) oonclick=nclick=x")
        assert strip_markup(once) == once

    def test_strips_null_and_zero_width(self):
        assert strip_markup("hel\x00lo\u200bworld\ufeff") == "helloworld"

    def test_preserves_normal_whitespace(self):
        assert strip_markup("a cat\non a\tmat") == "a cat\non a\tmat"


# =====================================================================
# sanitize_prompt
# =====================================================================

class TestSanitizePrompt:
    def test_clean_prompt_passes_trimmed(self, policy):
        assert sanitize_prompt("  a cat on a mat  ", policy=policy) == "a cat on a mat"

    def test_script_tag_is_neutralised(self, policy):
        result = sanitize_prompt("<script>alert(1)</script> draw a cat", policy=policy)
        assert "<" not in result and ">" not in result
        assert "draw a cat" in result

    def test_truncates_to_max_length(self, policy):
        result = sanitize_prompt("a" * 2500, max_length=2000, policy=policy)
        assert len(result) == 2000

    @pytest.mark.parametrize("bad", [None, 42, "", "   ", ["prompt"]])
    def test_invalid_input(self, policy, bad):
        with pytest.raises(SecurityError) as exc_info:
            sanitize_prompt(bad, policy=policy)
        assert exc_info.value.code == SecurityErrorCode.INVALID_PROMPT
        assert exc_info.value.status_code == 400

    def test_empty_after_stripping(self, policy):
        with pytest.raises(SecurityError) as exc_info:
            sanitize_prompt("<<>>", policy=policy)
        assert exc_info.value.code == SecurityErrorCode.INVALID_PROMPT

    def test_sensitive_word_reported(self, policy):
        with pytest.raises(SecurityError) as exc_info:
            sanitize_prompt("a scene full of VIOLENCE", policy=policy)
        err = exc_info.value
        assert err.code == SecurityErrorCode.SENSITIVE_CONTENT
        assert err.details == {"word": "violence"}
        assert "violence" in err.message

    def test_cjk_term(self, policy):
        with pytest.raises(SecurityError) as exc_info:
            sanitize_prompt("画一个暴力场景", policy=policy)
        assert exc_info.value.details["word"] == "暴力"

    def test_custom_policy_callable(self):
        def deny_cats(text):
            return "cat" if "cat" in text else None

        with pytest.raises(SecurityError):
            sanitize_prompt("a cat", policy=deny_cats)
        assert sanitize_prompt("a dog", policy=deny_cats) == "a dog"


# =====================================================================
# Policies
# =====================================================================

class TestPolicies:
    def test_substring_matches_inside_words(self):
        assert substring_policy(["hate"])("whatever") == "hate"

    def test_token_matches_whole_words_only(self):
        match = token_policy(["hate"])
        assert match("whatever") is None
        assert match("I HATE mondays") == "hate"

    def test_empty_terms_ignored(self):
        assert substring_policy(["", "x"])("abc") is None

    def test_build_policy(self):
        assert build_policy("token", ["hate"])("whatever") is None
        assert build_policy("substring", ["hate"])("whatever") == "hate"

    def test_build_policy_unknown(self):
        with pytest.raises(ValueError):
            build_policy("regex", ["hate"])
