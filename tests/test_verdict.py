from __future__ import annotations

import pytest

from donegate.verdict import NO_RATIONALE, Verdict, VerdictError, VerdictParser, parse_verdict


def test_fail_with_reason_and_body() -> None:
    verdict = parse_verdict("FAIL: missing tests\n\n### details\nmore text")

    assert verdict == Verdict(passed=False, skip=False, reason="missing tests", body="### details\nmore text")


@pytest.mark.parametrize(
    ("text", "label", "reason"),
    [
        ("PASS: all good", "PASS", "all good"),
        ("**PASS**: bold verdict", "PASS", "bold verdict"),
        ("## FAIL: heading verdict", "FAIL", "heading verdict"),
        ("_SKIP_ - refactor in progress", "SKIP", "refactor in progress"),
        ("- FAIL: copied the bullet from the instructions", "FAIL", "copied the bullet from the instructions"),
        ("Let me look at the diff.\n\nFAIL: off-by-one in loop", "FAIL", "off-by-one in loop"),
    ],
)
def test_first_verdict_line_wins(text: str, label: str, reason: str) -> None:
    verdict = parse_verdict(text)

    assert verdict is not None
    assert verdict.label == label
    assert verdict.reason == reason


def test_body_becomes_reason_when_inline_reason_missing() -> None:
    verdict = parse_verdict("FAIL\n\nThe new branch in parse() has no test.")

    assert verdict is not None
    assert verdict.reason == "The new branch in parse() has no test."
    assert verdict.body == "The new branch in parse() has no test."


def test_placeholder_when_no_reason_at_all() -> None:
    verdict = parse_verdict("PASS")

    assert verdict is not None
    assert verdict.passed is True
    assert verdict.reason == NO_RATIONALE
    assert verdict.body is None


def test_words_starting_with_verdict_tokens_do_not_match() -> None:
    assert parse_verdict("PASSING tests look fine") is None
    assert parse_verdict("Failure modes were considered") is None


def test_skip_verdict_is_neither_pass_nor_fail() -> None:
    verdict = parse_verdict("SKIP: nothing to review")

    assert verdict is not None
    assert verdict.skip is True
    assert verdict.passed is None


def test_parser_uses_classifier_when_no_verdict_line() -> None:
    seen: list[str] = []

    def classifier(text: str) -> str:
        seen.append(text)
        return "fail"

    transcript = "The change looks risky.\nIt removes validation."
    verdict = VerdictParser(classifier).parse(transcript)

    assert seen == [transcript]
    assert verdict.passed is False
    assert verdict.reason == "The change looks risky."


def test_parser_does_not_consult_classifier_for_well_formed_output() -> None:
    def classifier(_: str) -> str:
        raise AssertionError("classifier should not run")

    assert VerdictParser(classifier).parse("PASS: fine").passed is True


def test_parser_raises_when_both_tiers_fail() -> None:
    with pytest.raises(VerdictError, match="Unexpected reviewer output: hmm"):
        VerdictParser(lambda _: "maybe").parse("hmm\nnot sure")

    with pytest.raises(VerdictError, match="Unexpected reviewer output"):
        VerdictParser(lambda _: None).parse("hmm")

    with pytest.raises(VerdictError, match="No output from reviewer"):
        VerdictParser().parse("   ")
