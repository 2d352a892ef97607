"""
Session State Data Model

Screens, roles and the SessionState dataclass owned by the
Navigation Controller.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional


class Role(str, Enum):
    """Account role, carried separately from the screen."""
    STUDENT = "student"
    TEACHER = "teacher"
    PARENT = "parent"

    @classmethod
    def parse(cls, value: Optional[str]) -> "Role":
        """Unknown or missing roles map to student."""
        try:
            return cls(value)
        except ValueError:
            return cls.STUDENT


class AppState(str, Enum):
    """Top-level screen selected by the Navigation Controller."""
    LOGIN = "login"
    ONBOARDING = "onboarding"
    DASHBOARD = "dashboard"
    CHAPTER = "chapter"
    QUIZ = "quiz"
    LEARNING_MODE_SELECTION = "learning-mode-selection"
    IMMERSIVE_TEXT = "immersive-text"
    SLIDES_NARRATION = "slides-narration"
    AUDIO_LESSON = "audio-lesson"
    MINDMAP = "mindmap"
    GAME = "game"
    VIDEO = "video"
    CORE_DESIGN = "core-design"
    TEACHING_DOCUMENT = "teaching-document"
    TASK_CONFIGURATION = "task-configuration"


LEARNING_MODES: FrozenSet[AppState] = frozenset({
    AppState.IMMERSIVE_TEXT,
    AppState.SLIDES_NARRATION,
    AppState.AUDIO_LESSON,
    AppState.MINDMAP,
    AppState.GAME,
    AppState.VIDEO,
})

SHARED_SCREENS: FrozenSet[AppState] = frozenset({
    AppState.LOGIN,
    AppState.ONBOARDING,
    AppState.DASHBOARD,
})

STUDENT_SCREENS: FrozenSet[AppState] = frozenset({
    AppState.CHAPTER,
    AppState.QUIZ,
    AppState.LEARNING_MODE_SELECTION,
}) | LEARNING_MODES

TEACHER_SCREENS: FrozenSet[AppState] = frozenset({
    AppState.CORE_DESIGN,
    AppState.TEACHING_DOCUMENT,
    AppState.TASK_CONFIGURATION,
})

# Screens where the tutor sidebar is shown and the section sidebar hidden
TUTOR_SCREENS: FrozenSet[AppState] = frozenset({AppState.LEARNING_MODE_SELECTION}) | LEARNING_MODES

ROLE_SCREENS: Dict[Role, FrozenSet[AppState]] = {
    Role.STUDENT: SHARED_SCREENS | STUDENT_SCREENS,
    Role.TEACHER: SHARED_SCREENS | TEACHER_SCREENS,
    Role.PARENT: SHARED_SCREENS,
}


def screen_allowed(role: Role, screen: AppState) -> bool:
    """Check whether a screen belongs to the given role's component tree."""
    return screen in ROLE_SCREENS[role]


@dataclass
class AuthUser:
    """Authenticated profile as exposed by the auth collaborator."""
    id: str
    role: Role = Role.STUDENT
    grade: str = ""
    interests: List[str] = field(default_factory=list)
    email: Optional[str] = None
    name: Optional[str] = None

    @property
    def needs_onboarding(self) -> bool:
        """No grade and no interests recorded yet."""
        return not self.grade and not self.interests


@dataclass(frozen=True)
class PdfContext:
    """Source document of the active multi-modal lesson (read-only for screens)."""
    file_name: str
    grade: str = ""
    interests: tuple = ()


@dataclass(frozen=True)
class TutorQuestionTrigger:
    """One-shot request for the tutor widget; timestamp is the dedup key."""
    selected_text: str
    context: str
    timestamp: int


@dataclass
class SessionState:
    """Single source of truth for what is on screen."""
    role: Role = Role.STUDENT
    app_state: AppState = AppState.LOGIN
    active_section: str = "learn-your-way"
    user: Optional[AuthUser] = None
    loading: bool = False
    current_chapter: Optional[str] = None
    pdf_context: Optional[PdfContext] = None
    tutor_question_trigger: Optional[TutorQuestionTrigger] = None
    # Deep-link sub-tab for the courses section (e.g. "shared")
    course_tab: Optional[str] = None
    # Teacher course draft accumulated across the design sub-flow
    course_design: Dict[str, Any] = field(default_factory=dict)
