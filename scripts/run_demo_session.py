"""Walk one student through a full learning session.

Runs offline by default (local SQLite cache only). With PROGRESS_API_URL,
SUPABASE_URL and SUPABASE_ANON_KEY set, signs in with DEMO_EMAIL /
DEMO_PASSWORD and syncs progress to the remote API as well.
"""

import asyncio
import os
import sys
import tempfile
from pathlib import Path

from dotenv import load_dotenv

project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root / "learning_session_orchestrator" / "src"))

from learning_session_orchestrator.auth import AuthSession
from learning_session_orchestrator.course_publisher import CoursePublisher
from learning_session_orchestrator.lesson_content import fractions_quiz, newton_mindmap
from learning_session_orchestrator.logger import get_logger, setup_logging
from learning_session_orchestrator.navigation_controller import NavigationController
from learning_session_orchestrator.progress_api import RemoteProgressAPI
from learning_session_orchestrator.progress_store import SQLiteProgressCache
from learning_session_orchestrator.progress_sync import ProgressSyncEngine
from learning_session_orchestrator.session_state import AuthUser, PdfContext
from learning_session_orchestrator.supabase_client import get_supabase_client
from learning_session_orchestrator.tutor_channel import TutorChannel
from learning_session_orchestrator.tutor_widget import TutorWidget

load_dotenv()

log = get_logger("demo")

MINDMAP_ANSWERS = [
    "我用手推门",
    "门也会推回我的手",
    "大小相等，方向相反",
    "用脚蹬地，滑板就向前走",
    "游泳的时候手向后推水",
]


async def build_session():
    online = all(os.getenv(name) for name in ("PROGRESS_API_URL", "SUPABASE_URL", "SUPABASE_ANON_KEY"))
    supabase = get_supabase_client() if online else None
    auth = AuthSession(supabase)

    cache_path = os.getenv("PROGRESS_CACHE_PATH") or str(Path(tempfile.gettempdir()) / "demo_progress_cache.db")
    remote = RemoteProgressAPI(auth.get_access_token) if online else None
    engine = ProgressSyncEngine(remote=remote, cache=SQLiteProgressCache(Path(cache_path)))

    channel = TutorChannel()
    widget = TutorWidget(channel, thinking_delay=0.2)
    widget.attach()

    controller = NavigationController(
        sync_engine=engine,
        channel=channel,
        publisher=CoursePublisher(supabase),
    )
    auth.add_listener(controller.sync_auth)

    if online:
        await auth.sign_in(os.getenv("DEMO_EMAIL", "student@demo.com"), os.getenv("DEMO_PASSWORD", "demo123"))
    else:
        controller.sync_auth(AuthUser(id="demo-student", name="Demo"))
    return controller, engine, widget


async def run():
    controller, engine, widget = await build_session()
    user = controller.state.user
    if user is None:
        log.error("Sign-in failed, nothing to demo")
        return 1

    log.section("Session start", {"user": user.id, "screen": controller.app_state.value})
    await engine.load_progress(user.id)

    if controller.app_state.value == "onboarding":
        user.grade, user.interests = "五年级", ["滑板", "游泳"]
        controller.sync_auth(user)
        log.info("Onboarding complete", {"section": controller.state.active_section})

    log.subsection("Mind-map lesson")
    controller.personalize_pdf(PdfContext(file_name="newton-third-law.pdf", grade=user.grade,
                                          interests=tuple(user.interests)))
    controller.select_learning_mode("mindmap")
    mindmap = newton_mindmap()
    for answer in MINDMAP_ANSWERS:
        result = mindmap.submit(answer)
        log.info(f"Answer: {answer}", {"accepted": result.accepted, "reveal": result.reveal_id})
        mindmap.next_step()

    controller.ask_tutor("反作用力", "门也会推回我的手")
    await widget.drain()
    log.info("Tutor replied", {"message": widget.messages[-1].content})

    status = await controller.complete_learning_mode(mindmap.validator.progress_percent, time_spent=240,
                                                     completed=mindmap.is_complete)
    log.success("Mind-map progress saved", {"status": status.value if status else None})
    controller.back()
    controller.back_to_dashboard()

    log.subsection("Chapter and quiz")
    controller.start_chapter("1")
    controller.update_chapter_progress(60)
    controller.start_quiz()
    quiz = fractions_quiz("1", channel=controller.channel)
    for option in ["3/5", "1/2 小时", "6/7", "5/8", "7/9"]:
        quiz.answer(option)
        quiz.next_question()
    await controller.complete_quiz(quiz.finish())
    await widget.drain()

    await engine.drain()
    analytics = await engine.load_analytics()
    log.section("Session summary", {
        "screen": controller.app_state.value,
        "records": {unit: record.to_wire() for unit, record in engine.progress.items()},
        "analytics_source": analytics.source,
        "completed_units": analytics.completed_units,
    })
    return 0


def main() -> int:
    setup_logging()
    return asyncio.run(run())


if __name__ == "__main__":
    raise SystemExit(main())
