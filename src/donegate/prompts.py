"""Prompt templates shared by reviewer tasks, the verdict classifier and the arbiter."""

from __future__ import annotations

from typing import Dict

REVIEW_FORMAT_INSTRUCTION = (
    "You are a code reviewer. Your ENTIRE response must start with one of:\n"
    "- PASS: <brief reasoning>\n"
    "- FAIL: <one-line reason>\n"
    "- SKIP: <why a review is not useful right now>\n\n"
    "A FAIL may be followed by a blank line and a longer structured explanation."
)

CLASSIFIER_INSTRUCTION = (
    "Below is the output of a code reviewer. Classify its overall verdict.\n"
    "Answer with exactly one word: PASS, FAIL, or SKIP."
)

BUILTIN_PROMPTS: Dict[str, str] = {
    "review:commit_quality": """Review staged changes for:
1. Test coverage gaps: if the diff adds or changes logic (conditionals, computations,
   state transitions, error handling), tests for that logic must exist in the staged
   diff or on disk. Declarative code does not require test coverage.
2. Logic errors or edge cases
3. Dead code

Staged diff:
{{staged_diff}}

Recent commits:
{{recent_commits}}

Working tree status:
{{git_status}}""",
    "review:test_coverage": """Review the code changes below for test coverage adequacy.

Does the change contain logic (conditionals, computations, state transitions, error
handling, validation) that could break if reverted? If so, a test must exist that would
catch the reversion. Comments, whitespace, log messages, non-code config files and pure
removals are exempt.

Before failing, verify by reading the actual test files on disk.

Changes since the last review:
{{changes_since_last_review}}
{{#session_diff}}
Diffs for files edited in this session:
{{session_diff}}
{{/session_diff}}

Working tree status:
{{git_status}}""",
    "review:code_quality": """You are reviewing recent code changes for quality issues.

If the working tree shows signs of an in-progress refactor (half-moved functions,
temporary scaffolding, incomplete renames), answer SKIP.

Otherwise examine the changes for:
1. Logic errors: incorrect conditions, off-by-one, wrong variable, swapped arguments
2. Dead code: unreachable branches, unused imports, orphaned functions
3. Error handling gaps: swallowed errors, missing checks on external data
4. Misleading names

Changes since the last review:
{{changes_since_last_review}}

Working tree status:
{{git_status}}""",
}


def render_review_prompt(user_prompt: str) -> str:
    """Wrap a resolved task prompt with the verdict format instruction."""
    return f"{REVIEW_FORMAT_INSTRUCTION}\n\n{user_prompt}"


def render_classifier_prompt(transcript: str) -> str:
    return f"{CLASSIFIER_INSTRUCTION}\n\n--- reviewer output ---\n{transcript}\n--- end ---"


def render_arbiter_prompt(*, command: str, failures: int, output: str, appeal: str) -> str:
    """Build the arbiter's prompt for one script appeal."""
    return f"""You are an arbiter evaluating whether a script task should be suspended.

A script task has failed {failures} consecutive times. The developer has appealed
the failure. Your job is to assess whether the appeal is honest and reasonable.

## Script
Command: `{command}`

## Latest script output (may be truncated)
{(output or "(no output)")[:4000]}

## Developer's appeal
{appeal}

## Instructions

Evaluate the developer's reasoning. Consider:
1. Is the appeal honest and specific, not vague hand-waving?
2. Is it plausible that the failure is environmental, pre-existing, or unrelated?
3. Would suspending this task for the session be a reasonable decision?

Your first word must be PASS, FAIL, or SKIP. Then explain your reasoning briefly.

PASS: suspend the task for the rest of this session (appeal is compelling)
FAIL: deny the appeal (developer should fix the issue)
SKIP: suspend the task (benefit of the doubt / unclear situation)"""


BACKCHANNEL_MARKER = "Write your recommendation and reasoning below this line:"

BACKCHANNEL_INSTRUCTIONS = f"""If you believe this failure is not caused by your code changes (flaky test,
environment issue, pre-existing failure), write your reasoning below.

An AI arbiter will evaluate your appeal and may suspend this task for the
remainder of the session.

Recommend one of:
- **PASS**: failure is environmental / pre-existing / not caused by my changes
- **SKIP**: mid-task, will address before done, suspend for now

A SUPERVISORY AGENT WILL ASSESS THE HONESTY AND INTEGRITY OF YOUR
RESPONSE. DO NOT ATTEMPT TO LIE OR MANIPULATE TO BYPASS THE CHECK.

{BACKCHANNEL_MARKER}"""


def render_backchannel(*, task_name: str, command: str, failures: int, failure_reason: str) -> str:
    """Render the editable appeal README for a chronically failing script."""
    quoted = "\n".join(f"> {line}" for line in failure_reason.splitlines()) or "> (no output)"
    return f"""# Script appeal: {task_name}

The script task **{task_name}** (`{command}`) has failed {failures} consecutive times.

Latest failure output:

{quoted}

---

{BACKCHANNEL_INSTRUCTIONS}

---
"""


__all__ = [
    "BACKCHANNEL_INSTRUCTIONS",
    "BACKCHANNEL_MARKER",
    "BUILTIN_PROMPTS",
    "CLASSIFIER_INSTRUCTION",
    "REVIEW_FORMAT_INSTRUCTION",
    "render_arbiter_prompt",
    "render_backchannel",
    "render_classifier_prompt",
    "render_review_prompt",
]
