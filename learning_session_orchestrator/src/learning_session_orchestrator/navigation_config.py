"""
Dashboard sections per role.
"""

from typing import Dict, List

from learning_session_orchestrator.session_state import Role


ROLE_SECTIONS: Dict[Role, List[str]] = {
    Role.STUDENT: ["home", "learn-your-way", "paths", "reports", "settings"],
    Role.TEACHER: ["overview", "materials", "course-design", "courses", "classes", "settings"],
    Role.PARENT: ["overview", "progress", "rewards", "settings"],
}

DEFAULT_SECTIONS: Dict[Role, str] = {
    Role.STUDENT: "learn-your-way",
    Role.TEACHER: "overview",
    Role.PARENT: "overview",
}


def default_section(role: Role) -> str:
    """Section shown when a role lands on the dashboard with no explicit choice."""
    return DEFAULT_SECTIONS[role]


def sections_for(role: Role) -> List[str]:
    return list(ROLE_SECTIONS[role])
