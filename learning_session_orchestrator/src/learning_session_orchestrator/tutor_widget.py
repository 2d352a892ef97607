"""
Tutor Widget

Sidebar tutor shown on mode-selection and mode screens. Single consumer
of the tutor channel:

- ASK_TUTOR with a timestamp is a text-selection trigger, handled at most
  once per timestamp with a reply keyed on the selected text.
- ASK_TUTOR without a timestamp is a free question.
- WRONG_ANSWER appends an offer to explain the concept again.

Replies are appended after a short "thinking" delay. With OPENAI_API_KEY
set they are generated by the LLM; otherwise, or when the call fails,
canned replies are used.
"""

import asyncio
import logging
import os
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from dotenv import load_dotenv
from openai import AsyncOpenAI

from learning_session_orchestrator.session_state import TutorQuestionTrigger
from learning_session_orchestrator.tutor_channel import TutorChannel, TutorSignal

load_dotenv()

logger = logging.getLogger(__name__)

GREETING = "你好！我是Capybara导师🐧，专门帮助你学习物理知识。有什么问题随时问我哦！"
WRONG_ANSWER_MESSAGE = "我注意到你答错了这道题。让我来帮你理解这个概念。"

# Checked in order; longer phrases first so "反作用力" is not caught by "作用力"
CONTEXTUAL_REPLIES = [
    ("方向相反", "这个可以想象一下，你推墙，墙也在推你。你能想到生活里类似的情况吗？",
     ["举个例子", "我想想"]),
    ("反作用力", "反作用力是被推物体对施力物体的反向作用力。桌子也会对你的手产生一个向后的力！",
     ["为什么感受不到？", "做个实验"]),
    ("作用力", "作用力是物体对另一个物体施加的力。比如你用手推桌子，你的手对桌子的力就是作用力。",
     ["反作用力呢？", "看动画演示"]),
    ("大小相等", "对！作用力和反作用力大小总是相等的。这就像跷跷板两端的力一样平衡。",
     ["那为什么物体会移动？", "更多例子"]),
]

GENERAL_REPLIES = [
    ("很好的问题！让我来帮你解答。根据牛顿第三定律，作用力和反作用力总是成对出现的。",
     ["看例子", "再试一次"]),
    ("我注意到你可能对这个概念还不太清楚。要不要我们换个角度来理解？",
     ["换个方式", "查看提示"]),
    ("太棒了！你已经掌握了这个概念的核心。让我们继续深入学习吧！",
     ["下一步"]),
]


@dataclass
class TutorMessage:
    role: str  # "student" or "tutor"
    content: str
    timestamp: datetime = field(default_factory=datetime.now)
    buttons: List[str] = field(default_factory=list)


def contextual_reply(selected_text: str) -> TutorMessage:
    """Canned reply for a text-selection question."""
    for keyword, content, buttons in CONTEXTUAL_REPLIES:
        if keyword in selected_text:
            return TutorMessage(role="tutor", content=content, buttons=list(buttons))
    return TutorMessage(
        role="tutor",
        content=f'关于"{selected_text}"，这是一个很好的问题！让我来帮你理解这个概念。',
        buttons=["详细解释", "举例说明"],
    )


class TutorWidget:
    """
    Conversation state of the tutor sidebar.

    attach() subscribes to the channel; reply tasks run on the current
    event loop and can be awaited with drain().
    """

    def __init__(
        self,
        channel: TutorChannel,
        subject: str = "物理",
        thinking_delay: Optional[float] = None,
        llm_client: Optional[AsyncOpenAI] = None,
        rng: Optional[random.Random] = None,
    ):
        self.channel = channel
        self.subject = subject
        self.thinking_delay = (
            thinking_delay
            if thinking_delay is not None
            else float(os.getenv("TUTOR_THINKING_DELAY", "1.0"))
        )
        self.model = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
        self.llm_client = llm_client
        if self.llm_client is None:
            api_key = os.getenv("OPENAI_API_KEY")
            if api_key:
                self.llm_client = AsyncOpenAI(api_key=api_key)
        self.rng = rng or random.Random()

        self.messages: List[TutorMessage] = [TutorMessage(role="tutor", content=GREETING)]
        self.expanded = False
        self.has_new_message = False
        self._seen_triggers: Set[int] = set()
        self._pending: Set[asyncio.Task] = set()
        self._unsubscribers: List[Callable[[], None]] = []

    # -------------------------------------------------------------------------
    # Channel wiring
    # -------------------------------------------------------------------------

    def attach(self):
        """Subscribe to both tutor signals."""
        self._unsubscribers = [
            self.channel.subscribe(TutorSignal.ASK_TUTOR, self._on_ask_tutor),
            self.channel.subscribe(TutorSignal.WRONG_ANSWER, self._on_wrong_answer),
        ]

    def detach(self):
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def _on_ask_tutor(self, payload: Optional[Dict[str, Any]]):
        payload = payload or {}
        question = payload.get("question", "")
        context = payload.get("context", "")
        timestamp = payload.get("timestamp")
        if timestamp is not None:
            self.consume_trigger(TutorQuestionTrigger(
                selected_text=question,
                context=context,
                timestamp=timestamp,
            ))
        else:
            self.send_message(question, context)

    def _on_wrong_answer(self, payload: Optional[Dict[str, Any]]):
        self.messages.append(TutorMessage(
            role="tutor",
            content=WRONG_ANSWER_MESSAGE,
            buttons=["重新解释", "看例子"],
        ))
        if not self.expanded:
            self.has_new_message = True

    # -------------------------------------------------------------------------
    # Conversation
    # -------------------------------------------------------------------------

    def consume_trigger(self, trigger: Optional[TutorQuestionTrigger]) -> bool:
        """
        Handle a text-selection trigger once.

        Returns:
            False if there is no trigger or it was already handled
        """
        if trigger is None or trigger.timestamp in self._seen_triggers:
            return False
        self._seen_triggers.add(trigger.timestamp)

        self.expanded = True
        self.messages.append(TutorMessage(
            role="student",
            content=f'关于"{trigger.selected_text}"，我想了解更多。',
        ))
        self._schedule(self._reply(trigger.selected_text, trigger.context, contextual=True))
        return True

    def send_message(self, text: str, context: str = "") -> bool:
        if not text or not text.strip():
            return False
        self.messages.append(TutorMessage(role="student", content=text))
        self._schedule(self._reply(text, context, contextual=False))
        return True

    def expand(self):
        self.expanded = True
        self.has_new_message = False

    def collapse(self):
        self.expanded = False

    async def drain(self):
        """Wait until every scheduled reply has been appended."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _schedule(self, coro):
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _reply(self, text: str, context: str, contextual: bool):
        if self.thinking_delay > 0:
            await asyncio.sleep(self.thinking_delay)

        message = None
        if self.llm_client:
            message = await self._llm_reply(text, context)
        if message is None:
            message = contextual_reply(text) if contextual else self._general_reply()

        self.messages.append(message)
        if not self.expanded:
            self.has_new_message = True

    def _general_reply(self) -> TutorMessage:
        content, buttons = self.rng.choice(GENERAL_REPLIES)
        return TutorMessage(role="tutor", content=content, buttons=list(buttons))

    async def _llm_reply(self, text: str, context: str) -> Optional[TutorMessage]:
        prompt = f"""学生正在学习{self.subject}。

学生的问题: {text}
相关内容: {context or "无"}

用一两句简短、鼓励性的中文回答，并引导学生自己思考。"""

        try:
            completion = await self.llm_client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": "You are a patient, encouraging tutor for school students."},
                    {"role": "user", "content": prompt}
                ],
                temperature=0.7,
                max_tokens=200
            )
            content = (completion.choices[0].message.content or "").strip()
            if not content:
                return None
            return TutorMessage(role="tutor", content=content)
        except Exception as e:
            logger.warning(f"⚠️ [TutorWidget] LLM reply failed, using canned reply: {e}")
            return None
