"""
Unit Tests for Tutor Channel and Widget

Tests the single-consumer channel contract and one-shot trigger handling.
"""

import os
import random
import sys
from types import SimpleNamespace

import pytest

# Add project root to path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, os.path.join(project_root, "learning_session_orchestrator", "src"))

from learning_session_orchestrator.errors import ChannelSubscriptionError
from learning_session_orchestrator.session_state import TutorQuestionTrigger
from learning_session_orchestrator.tutor_channel import TutorChannel, TutorSignal
from learning_session_orchestrator.tutor_widget import (
    GENERAL_REPLIES,
    WRONG_ANSWER_MESSAGE,
    TutorWidget,
    contextual_reply,
)


class FakeLLM:
    """Stands in for AsyncOpenAI: chat.completions.create."""

    def __init__(self, content=None, error=None):
        self.prompts = []

        async def create(**kwargs):
            self.prompts.append(kwargs["messages"][-1]["content"])
            if error:
                raise error
            message = SimpleNamespace(content=content)
            return SimpleNamespace(choices=[SimpleNamespace(message=message)])

        self.chat = SimpleNamespace(completions=SimpleNamespace(create=create))


class TestTutorChannel:
    """Test suite for TutorChannel."""

    def test_single_subscriber_per_signal(self):
        channel = TutorChannel()
        channel.subscribe(TutorSignal.ASK_TUTOR, lambda payload: None)

        with pytest.raises(ChannelSubscriptionError):
            channel.subscribe(TutorSignal.ASK_TUTOR, lambda payload: None)

    def test_signals_are_independent(self):
        channel = TutorChannel()
        channel.subscribe(TutorSignal.ASK_TUTOR, lambda payload: None)
        channel.subscribe(TutorSignal.WRONG_ANSWER, lambda payload: None)

        assert channel.has_subscriber(TutorSignal.WRONG_ANSWER)

    def test_unsubscribe_frees_the_slot(self):
        channel = TutorChannel()
        unsubscribe = channel.subscribe(TutorSignal.ASK_TUTOR, lambda payload: None)

        unsubscribe()
        channel.subscribe(TutorSignal.ASK_TUTOR, lambda payload: None)

        assert channel.has_subscriber(TutorSignal.ASK_TUTOR)

    def test_publish_without_subscriber_is_dropped(self):
        assert TutorChannel().wrong_answer() is False

    def test_ask_tutor_payload(self):
        channel = TutorChannel()
        received = []
        channel.subscribe(TutorSignal.ASK_TUTOR, received.append)

        channel.ask_tutor("作用力", "推门", timestamp=5)

        assert received == [{"question": "作用力", "context": "推门", "timestamp": 5}]


class TestTutorWidget:
    """Test suite for TutorWidget."""

    @pytest.fixture(autouse=True)
    def no_api_key(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    @pytest.fixture
    def channel(self):
        return TutorChannel()

    @pytest.fixture
    def widget(self, channel):
        widget = TutorWidget(channel, thinking_delay=0, rng=random.Random(1))
        widget.attach()
        return widget

    @pytest.mark.asyncio
    async def test_trigger_consumed_once(self, widget):
        trigger = TutorQuestionTrigger(selected_text="反作用力", context="", timestamp=1000)

        assert widget.consume_trigger(trigger) is True
        assert widget.consume_trigger(trigger) is False
        await widget.drain()

        assert [m.role for m in widget.messages] == ["tutor", "student", "tutor"]
        assert widget.messages[1].content == '关于"反作用力"，我想了解更多。'
        assert widget.messages[2].content.startswith("反作用力是被推物体")
        assert widget.expanded is True

    @pytest.mark.asyncio
    async def test_new_timestamp_fires_again(self, widget):
        widget.consume_trigger(TutorQuestionTrigger(selected_text="作用力", context="", timestamp=1))
        widget.consume_trigger(TutorQuestionTrigger(selected_text="作用力", context="", timestamp=2))
        await widget.drain()

        assert len(widget.messages) == 5

    @pytest.mark.asyncio
    async def test_trigger_over_channel(self, channel, widget):
        channel.ask_tutor("方向相反", "牛顿第三定律", timestamp=7)
        channel.ask_tutor("方向相反", "牛顿第三定律", timestamp=7)
        await widget.drain()

        assert len(widget.messages) == 3
        assert widget.messages[-1].content.startswith("这个可以想象一下")

    @pytest.mark.asyncio
    async def test_free_question_gets_general_reply(self, channel, widget):
        channel.ask_tutor("为什么滑板会动？")
        await widget.drain()

        assert widget.messages[1].content == "为什么滑板会动？"
        assert widget.messages[2].content in [content for content, _ in GENERAL_REPLIES]

    def test_wrong_answer_message(self, channel, widget):
        channel.wrong_answer()

        assert widget.messages[-1].content == WRONG_ANSWER_MESSAGE
        assert widget.has_new_message is True

    def test_second_widget_cannot_attach(self, channel, widget):
        with pytest.raises(ChannelSubscriptionError):
            TutorWidget(channel, thinking_delay=0).attach()

    def test_blank_message_ignored(self, widget):
        assert widget.send_message("  ") is False

    @pytest.mark.asyncio
    async def test_llm_reply(self, channel):
        llm = FakeLLM(content="想想你推墙时手的感觉。")
        widget = TutorWidget(channel, thinking_delay=0, llm_client=llm)

        widget.send_message("什么是反作用力？", "推门")
        await widget.drain()

        assert widget.messages[-1].content == "想想你推墙时手的感觉。"
        assert "什么是反作用力？" in llm.prompts[0]

    @pytest.mark.asyncio
    async def test_llm_failure_falls_back_to_canned_reply(self, channel):
        widget = TutorWidget(channel, thinking_delay=0, llm_client=FakeLLM(error=RuntimeError("rate limited")))

        widget.consume_trigger(TutorQuestionTrigger(selected_text="大小相等", context="", timestamp=3))
        await widget.drain()

        assert widget.messages[-1].content.startswith("对！作用力和反作用力大小总是相等的")

    def test_generic_contextual_reply(self):
        reply = contextual_reply("惯性")

        assert reply.content == '关于"惯性"，这是一个很好的问题！让我来帮你理解这个概念。'
