"""
Yes/no/choice questions the workspace asks while loading or exporting.

The workspace never renders dialogs; it awaits DecisionProvider.choose()
and acts on the returned option. The UI adapter decides how to obtain it.
"""

import inspect
from dataclasses import dataclass
from typing import Tuple

# Prompt kinds
DUPLICATE_FILE = "duplicate_file"
LARGE_FILE = "large_file"
MASTER_RELOAD = "master_reload"
UNCLASSIFIED_EXPORT = "unclassified_export"
WARNING_EXPORT = "warning_export"

# Options
OVERWRITE = "overwrite"
OVERWRITE_ALL = "overwrite_all"
SKIP = "skip"
CONTINUE = "continue"
RESET = "reset"
DIFF = "diff"
INCLUDE = "include"
EXCLUDE = "exclude"
CANCEL = "cancel"


@dataclass
class Prompt:
    kind: str
    title: str
    message: str
    options: Tuple[str, ...]

    @property
    def default(self):
        # last option is always the non-destructive one (skip / cancel)
        return self.options[-1]


class DecisionProvider:
    """Answers prompts. Subclasses implement choose()."""

    async def choose(self, prompt):
        raise NotImplementedError


class StaticDecisions(DecisionProvider):
    """
    Pre-set answers per prompt kind.

    answers maps a kind to one option, or to a list of options consumed one
    per prompt. Kinds without an answer (or with an answer the prompt does
    not offer) get the prompt's default.
    """

    def __init__(self, answers=None):
        self.answers = {}
        for kind, value in (answers or {}).items():
            self.answers[kind] = list(value) if isinstance(value, (list, tuple)) else value
        self.asked = []

    async def choose(self, prompt):
        self.asked.append(prompt)
        answer = self.answers.get(prompt.kind)
        if isinstance(answer, list):
            answer = answer.pop(0) if answer else None
        if answer not in prompt.options:
            return prompt.default
        return answer


class CallbackDecisions(DecisionProvider):
    """Delegates to a plain or async callable taking the Prompt."""

    def __init__(self, callback):
        self.callback = callback

    async def choose(self, prompt):
        answer = self.callback(prompt)
        if inspect.isawaitable(answer):
            answer = await answer
        if answer not in prompt.options:
            return prompt.default
        return answer
