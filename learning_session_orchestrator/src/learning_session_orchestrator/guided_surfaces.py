"""
Host surfaces for the Guided-Response Validator.

MindmapBuilder turns accepted open-response answers into visible mind-map
nodes. QuizRunner walks a multiple-choice quiz and reports a QuizResult.
Each owns its own validator instance; scripts are never shared.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from learning_session_orchestrator.guided_validator import (
    GuidedResponseValidator,
    GuidedStep,
    MultipleChoiceValidator,
    ValidationResult,
)
from learning_session_orchestrator.progress_store import QuizResult
from learning_session_orchestrator.tutor_channel import TutorChannel

logger = logging.getLogger(__name__)


@dataclass
class MindmapNode:
    id: str
    text: str
    x: int = 0
    y: int = 0
    visible: bool = False
    user_created: bool = False


@dataclass
class MindmapConnection:
    source: str
    target: str
    visible: bool = False


class MindmapBuilder:
    """
    AI-guided mind-map: each accepted step reveals the node named by its
    reveal id, together with every connection touching that node.
    """

    def __init__(
        self,
        steps: Sequence[GuidedStep],
        nodes: Sequence[MindmapNode],
        connections: Sequence[MindmapConnection],
        validator: Optional[GuidedResponseValidator] = None,
        on_complete: Optional[Callable[[float], None]] = None,
    ):
        # Copies, so the module-level content stays pristine between sessions
        self.nodes: Dict[str, MindmapNode] = {
            node.id: MindmapNode(**vars(node)) for node in nodes
        }
        self.connections: List[MindmapConnection] = [
            MindmapConnection(**vars(conn)) for conn in connections
        ]
        self.validator = validator or GuidedResponseValidator(steps)
        self.on_complete = on_complete
        self.feedback = ""
        self._completion_reported = False

    @property
    def visible_nodes(self) -> List[MindmapNode]:
        return [node for node in self.nodes.values() if node.visible]

    @property
    def visible_connections(self) -> List[MindmapConnection]:
        return [conn for conn in self.connections if conn.visible]

    @property
    def is_complete(self) -> bool:
        return self.validator.is_terminal

    def submit(self, answer_text: str) -> ValidationResult:
        result = self.validator.submit(answer_text)
        if result.feedback:
            self.feedback = result.feedback
        if result.accepted and result.reveal_id:
            self.reveal(result.reveal_id)
        if self.is_complete and not self._completion_reported:
            self._completion_reported = True
            logger.info("🎉 [Mindmap] All steps revealed")
            if self.on_complete:
                self.on_complete(self.validator.progress_percent)
        return result

    def reveal(self, node_id: str) -> bool:
        node = self.nodes.get(node_id)
        if node is None:
            logger.warning(f"⚠️ [Mindmap] Unknown node to reveal: {node_id}")
            return False
        node.visible = True
        for conn in self.connections:
            if node_id in (conn.source, conn.target):
                conn.visible = True
        return True

    def hint(self) -> Optional[str]:
        return self.validator.request_hint()

    def next_step(self) -> bool:
        if not self.validator.advance():
            return False
        self.feedback = ""
        return True

    def add_node(self, node_id: str, text: str, x: int = 0, y: int = 0) -> MindmapNode:
        """Learner-created node, always visible."""
        node = MindmapNode(id=node_id, text=text, x=x, y=y, visible=True, user_created=True)
        self.nodes[node_id] = node
        return node


def score_message(percentage: int) -> Dict[str, str]:
    if percentage >= 90:
        return {"title": "优秀！", "message": "您掌握得非常好！", "emoji": "🏆"}
    if percentage >= 80:
        return {"title": "良好！", "message": "继续保持，再接再厉！", "emoji": "👍"}
    if percentage >= 60:
        return {"title": "及格！", "message": "还有提升空间，加油！", "emoji": "💪"}
    return {"title": "需要努力", "message": "建议复习后再次尝试", "emoji": "📚"}


class QuizRunner:
    """
    Multiple-choice quiz. Each question takes one answer, after which its
    explanation shows and the learner moves on.
    """

    def __init__(
        self,
        unit_id: str,
        questions: Sequence[GuidedStep],
        channel: Optional[TutorChannel] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.unit_id = unit_id
        self.validator = MultipleChoiceValidator(questions, channel=channel)
        self.clock = clock
        self.started_at = clock()
        self._locked: Dict[str, ValidationResult] = {}
        self.result: Optional[QuizResult] = None

    @property
    def current_question(self) -> Optional[GuidedStep]:
        return self.validator.current_step

    def answer(self, option: str) -> Optional[ValidationResult]:
        """Answer the current question. Returns None if it was already answered."""
        question = self.current_question
        if question is None or question.id in self._locked:
            return None
        result = self.validator.submit(option)
        self._locked[question.id] = result
        return result

    def next_question(self) -> bool:
        question = self.current_question
        if question is None or question.id not in self._locked:
            return False
        if self.validator.is_completed(question.id):
            return self.validator.advance()
        return self.validator.skip()

    def previous_question(self) -> bool:
        return self.validator.go_back()

    @property
    def all_answered(self) -> bool:
        return len(self._locked) == len(self.validator.steps)

    def finish(self) -> QuizResult:
        """Score the quiz and build the result reported to the controller."""
        score = self.validator.score()
        self.result = QuizResult(
            unit_id=self.unit_id,
            score=score["percentage"],
            answers=self.validator.answers_by_step(),
            time_spent=round(self.clock() - self.started_at),
        )
        logger.info(
            f"🏁 [Quiz] {self.unit_id} finished: {score['correct']}/{score['total']} ({score['percentage']}%)"
        )
        return self.result

    def reset(self):
        self.validator.reset()
        self._locked = {}
        self.result = None
        self.started_at = self.clock()
