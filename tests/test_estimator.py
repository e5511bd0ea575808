"""Tests for the text token estimator."""

from ctxmon.estimator import estimate_tokens


class TestEstimateTokens:

    def test_empty_and_missing(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens(None) == 0

    def test_ascii_four_chars_per_token(self):
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2
        assert estimate_tokens("a" * 400) == 100

    def test_wide_chars_pack_denser(self):
        assert estimate_tokens("你好") == 2
        assert estimate_tokens("你好世") == 2
        assert estimate_tokens("日本語のテキスト") == 6

    def test_mixed_rounds_up_once(self):
        # 2/4 + 1/1.5 = 1.1667
        assert estimate_tokens("ab你") == 2

    def test_single_char_is_one_token(self):
        assert estimate_tokens("x") == 1
