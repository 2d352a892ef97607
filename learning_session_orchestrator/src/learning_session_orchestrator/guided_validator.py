"""
Guided-Response Validator

Scores learner answers against a scripted sequence of steps and drives
the per-step reveal state:

    pending -> answered -> revealed            (accepted)
                        -> pending, hint-ready (rejected)

Open-response steps accept an answer that contains any expected keyword
(case-insensitive) or is longer than a free-text threshold. Multiple-choice
steps accept only the exact correct option label.

The validator knows nothing about rendering. On acceptance it hands back
the step's reveal id and the host surface decides what that shows.
"""

import logging
import os
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from dotenv import load_dotenv

from learning_session_orchestrator.tutor_channel import TutorChannel

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_FREE_TEXT_MIN_LENGTH = 10

ENCOURAGEMENTS = [
    "太棒了！你理解得很好！✨",
    "说得非常好！继续保持！🌟",
    "完全正确！你真聪明！👏",
    "很棒的思考！你掌握了！💡",
]
CONTINUE_PROMPT = "准备好继续了吗？点击下方按钮进入下一步！"
RETRY_MESSAGE = '再想想看，或者点击"💡 提示"按钮获得帮助！'


class StepStatus(str, Enum):
    PENDING = "pending"
    ANSWERED = "answered"
    REVEALED = "revealed"


@dataclass(frozen=True)
class GuidedStep:
    """One question of a step script. Immutable; progress lives in StepProgress."""
    id: str
    prompt: str
    expected_keywords: Tuple[str, ...] = ()
    on_accepted_reveal_id: Optional[str] = None
    hint: Optional[str] = None
    follow_up_prompt: Optional[str] = None
    # Multiple-choice steps only
    options: Tuple[str, ...] = ()
    correct_option: Optional[str] = None
    explanation: Optional[str] = None


@dataclass
class StepProgress:
    """Session-local state of one step."""
    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    answers: List[str] = field(default_factory=list)
    pending_answer: Optional[str] = None
    hint_eligible: bool = True
    first_answer_correct: Optional[bool] = None

    @property
    def completed(self) -> bool:
        return self.status == StepStatus.REVEALED


@dataclass
class ValidationResult:
    """Outcome of one submitted answer."""
    accepted: bool
    matched_keyword: Optional[str] = None
    next_step_index: Optional[int] = None
    reveal_id: Optional[str] = None
    feedback: str = ""


class GuidedResponseValidator:
    """
    Interpreter over an ordered step script.

    Used by the mind-map builder with open-response steps; the quiz uses the
    MultipleChoiceValidator subclass. Each hosting surface owns its instance.
    """

    def __init__(
        self,
        steps: Sequence[GuidedStep],
        free_text_min_length: Optional[int] = None,
        rng: Optional[random.Random] = None,
    ):
        """
        Args:
            steps: Step script supplied by the host surface
            free_text_min_length: Answers strictly longer than this are accepted
                without a keyword (default: FREE_TEXT_MIN_LENGTH or 10)
            rng: Random source for encouragement messages
        """
        if not steps:
            raise ValueError("A guided script needs at least one step")
        ids = [step.id for step in steps]
        if len(set(ids)) != len(ids):
            raise ValueError("Step ids must be unique within a script")

        self.steps: List[GuidedStep] = list(steps)
        self.free_text_min_length = (
            free_text_min_length
            if free_text_min_length is not None
            else int(os.getenv("FREE_TEXT_MIN_LENGTH", str(DEFAULT_FREE_TEXT_MIN_LENGTH)))
        )
        self.rng = rng or random.Random()
        self.current_index = 0
        self._state: Dict[str, StepProgress] = {step.id: StepProgress() for step in self.steps}

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def current_step(self) -> Optional[GuidedStep]:
        if self.current_index >= len(self.steps):
            return None
        return self.steps[self.current_index]

    def step_state(self, step_id: str) -> StepProgress:
        return self._state[step_id]

    def is_completed(self, step_id: str) -> bool:
        return self._state[step_id].completed

    @property
    def is_terminal(self) -> bool:
        """Every step revealed."""
        return all(state.completed for state in self._state.values())

    @property
    def progress_percent(self) -> float:
        revealed = sum(1 for state in self._state.values() if state.completed)
        return revealed / len(self.steps) * 100

    def revealed_ids(self) -> List[str]:
        return [
            step.on_accepted_reveal_id
            for step in self.steps
            if step.on_accepted_reveal_id and self._state[step.id].completed
        ]

    # -------------------------------------------------------------------------
    # Answering
    # -------------------------------------------------------------------------

    def answer(self, answer_text: str) -> bool:
        """
        Record an answer for the current step without evaluating it.

        Returns False when there is nothing to record (blank answer, script
        finished, or the step is already revealed).
        """
        step = self.current_step
        if step is None or not answer_text or not answer_text.strip():
            return False

        state = self._state[step.id]
        if state.completed:
            return False

        state.status = StepStatus.ANSWERED
        state.pending_answer = answer_text
        return True

    def evaluate(self) -> ValidationResult:
        """Score the recorded answer and move the step to revealed or back to pending."""
        step = self.current_step
        if step is None:
            return ValidationResult(accepted=False, feedback="")

        state = self._state[step.id]
        if state.completed:
            return self._accepted_result(step, matched_keyword=None)
        if state.status != StepStatus.ANSWERED or state.pending_answer is None:
            return ValidationResult(accepted=False, next_step_index=self.current_index)

        answer_text = state.pending_answer
        state.pending_answer = None
        state.attempts += 1
        state.answers.append(answer_text)

        accepted, matched_keyword = self._check(step, answer_text)
        if state.first_answer_correct is None:
            state.first_answer_correct = accepted

        if accepted:
            state.status = StepStatus.REVEALED
            state.hint_eligible = False
            logger.debug(f"✅ [Validator] Step {step.id} accepted (keyword={matched_keyword})")
            return self._accepted_result(step, matched_keyword)

        state.status = StepStatus.PENDING
        state.hint_eligible = True
        logger.debug(f"🔁 [Validator] Step {step.id} not accepted after {state.attempts} attempt(s)")
        return ValidationResult(
            accepted=False,
            next_step_index=self.current_index,
            feedback=RETRY_MESSAGE,
        )

    def submit(self, answer_text: str) -> ValidationResult:
        """Record and evaluate an answer for the current step."""
        if not self.answer(answer_text):
            step = self.current_step
            if step is not None and self._state[step.id].completed:
                return self._accepted_result(step, matched_keyword=None)
            return ValidationResult(
                accepted=False,
                next_step_index=self.current_index if step is not None else None,
            )
        return self.evaluate()

    def _check(self, step: GuidedStep, answer_text: str) -> Tuple[bool, Optional[str]]:
        lowered = answer_text.lower()
        for keyword in step.expected_keywords:
            if keyword and keyword.lower() in lowered:
                return True, keyword
        # Length of the answer as typed, surrounding whitespace included
        return len(answer_text) > self.free_text_min_length, None

    def _accepted_result(self, step: GuidedStep, matched_keyword: Optional[str]) -> ValidationResult:
        is_last = self.current_index >= len(self.steps) - 1
        encouragement = self.rng.choice(ENCOURAGEMENTS)
        follow_up = step.follow_up_prompt or ("" if is_last else CONTINUE_PROMPT)
        return ValidationResult(
            accepted=True,
            matched_keyword=matched_keyword,
            next_step_index=None if is_last else self.current_index + 1,
            reveal_id=step.on_accepted_reveal_id,
            feedback=f"{encouragement} {follow_up}".strip(),
        )

    # -------------------------------------------------------------------------
    # Navigation
    # -------------------------------------------------------------------------

    def request_hint(self) -> Optional[str]:
        """Hint for the current step, if it has one and is hint-eligible."""
        step = self.current_step
        if step is None:
            return None
        state = self._state[step.id]
        if not state.hint_eligible or state.completed:
            return None
        return step.hint

    def advance(self) -> bool:
        """Move past the current step once it is revealed."""
        step = self.current_step
        if step is None or not self._state[step.id].completed:
            return False
        self.current_index += 1
        return True

    def skip(self) -> bool:
        """Move to the next step without revealing the current one."""
        if self.current_index >= len(self.steps) - 1:
            return False
        self.current_index += 1
        return True

    def go_back(self) -> bool:
        if self.current_index == 0:
            return False
        self.current_index = min(self.current_index, len(self.steps)) - 1
        return True

    def reset(self):
        self.current_index = 0
        self._state = {step.id: StepProgress() for step in self.steps}


class MultipleChoiceValidator(GuidedResponseValidator):
    """
    Quiz variant: exact match against the correct option label.

    No keyword or free-text leniency applies. A wrong answer raises the
    wrong-answer tutor signal when a channel is given.
    """

    def __init__(
        self,
        steps: Sequence[GuidedStep],
        channel: Optional[TutorChannel] = None,
        rng: Optional[random.Random] = None,
    ):
        for step in steps:
            if step.correct_option is None:
                raise ValueError(f"Multiple-choice step {step.id} has no correct option")
            if step.options and step.correct_option not in step.options:
                raise ValueError(f"Correct option of step {step.id} is not among its options")
        super().__init__(steps, free_text_min_length=0, rng=rng)
        self.channel = channel

    def _check(self, step: GuidedStep, answer_text: str) -> Tuple[bool, Optional[str]]:
        correct = answer_text == step.correct_option
        if not correct and self.channel is not None:
            self.channel.wrong_answer()
        return correct, None

    def _accepted_result(self, step: GuidedStep, matched_keyword: Optional[str]) -> ValidationResult:
        result = super()._accepted_result(step, matched_keyword)
        if step.explanation:
            result.feedback = step.explanation
        return result

    def score(self) -> Dict[str, int]:
        """
        Score by first answers.

        Returns:
            Dictionary with correct, total and percentage (rounded)
        """
        total = len(self.steps)
        correct = sum(1 for state in self._state.values() if state.first_answer_correct)
        return {
            "correct": correct,
            "total": total,
            "percentage": round(correct / total * 100),
        }

    def answers_by_step(self) -> Dict[str, str]:
        """First answer given per step, keyed by step id."""
        return {
            step_id: state.answers[0]
            for step_id, state in self._state.items()
            if state.answers
        }
