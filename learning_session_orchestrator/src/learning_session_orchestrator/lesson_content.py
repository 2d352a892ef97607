"""
Built-in lesson scripts.

- NEWTON_THIRD_LAW_STEPS: guided mind-map on Newton's third law
- NEWTON_MINDMAP_NODES / NEWTON_MINDMAP_CONNECTIONS: the map those steps reveal
- FRACTIONS_QUIZ: same-denominator fraction addition and subtraction
"""

from typing import List, Optional

from learning_session_orchestrator.guided_validator import GuidedStep
from learning_session_orchestrator.guided_surfaces import (
    MindmapBuilder,
    MindmapConnection,
    MindmapNode,
    QuizRunner,
)
from learning_session_orchestrator.tutor_channel import TutorChannel

MINDMAP_ROOT_ID = "center"

NEWTON_THIRD_LAW_STEPS: List[GuidedStep] = [
    GuidedStep(
        id="step1",
        prompt='让我们一起探索牛顿第三定律！首先，你能用自己的话说说，什么是"作用力"吗？🤔',
        hint="提示：想想你推门的时候，你的手对门做了什么？",
        expected_keywords=("力", "推", "施加", "作用"),
        on_accepted_reveal_id="action-force",
        follow_up_prompt="很好！那么，当你推门时，门会对你的手产生什么呢？",
    ),
    GuidedStep(
        id="step2",
        prompt='当你推门时，门会对你的手产生什么呢？这就是"反作用力"！你能描述一下吗？',
        hint="提示：想想为什么推墙的时候手会感到疼？",
        expected_keywords=("反", "力", "推回", "相反"),
        on_accepted_reveal_id="reaction-force",
        follow_up_prompt="非常棒！那这两个力的大小关系是怎样的？",
    ),
    GuidedStep(
        id="step3",
        prompt="作用力和反作用力的大小有什么关系？方向呢？",
        hint="提示：牛顿第三定律的核心就在这里！",
        expected_keywords=("相等", "相反", "大小", "方向"),
        on_accepted_reveal_id="equal-opposite",
        follow_up_prompt="太棒了！让我们通过一些生活中的例子来加深理解。",
    ),
    GuidedStep(
        id="step4",
        prompt="你能想到滑板运动中有哪些牛顿第三定律的例子吗？比如怎么让滑板动起来？🛹",
        hint="提示：想想滑板手是怎么蹬地的...",
        expected_keywords=("蹬", "地", "推", "向前"),
        on_accepted_reveal_id="skateboarding",
        follow_up_prompt="说得很好！滑板手还可以怎么利用作用力和反作用力呢？",
    ),
    GuidedStep(
        id="step5",
        prompt="除了滑板，你还能想到其他运动中的例子吗？比如游泳、飞行、划船...",
        hint="提示：想想直升机、鸟类、摩托艇是怎么移动的",
        expected_keywords=("游泳", "飞", "划", "推水", "推空气"),
        on_accepted_reveal_id="other-examples",
        follow_up_prompt="恭喜你！你已经掌握了牛顿第三定律的核心概念！",
    ),
]

NEWTON_MINDMAP_NODES: List[MindmapNode] = [
    MindmapNode(id=MINDMAP_ROOT_ID, text="牛顿第三定律", x=400, y=250, visible=True),
    MindmapNode(id="action-force", text="作用力", x=250, y=150),
    MindmapNode(id="reaction-force", text="反作用力", x=550, y=150),
    MindmapNode(id="equal-opposite", text="大小相等\n方向相反", x=400, y=80),
    MindmapNode(id="skateboarding", text="滑板运动", x=200, y=350),
    MindmapNode(id="other-examples", text="其他例子", x=600, y=350),
]

NEWTON_MINDMAP_CONNECTIONS: List[MindmapConnection] = [
    MindmapConnection(source=MINDMAP_ROOT_ID, target=node.id)
    for node in NEWTON_MINDMAP_NODES
    if node.id != MINDMAP_ROOT_ID
]

FRACTIONS_QUIZ_TITLE = "分数加减法测验"

FRACTIONS_QUIZ: List[GuidedStep] = [
    GuidedStep(
        id="1",
        prompt="计算：2/5 + 1/5 = ?",
        options=("2/5", "3/5", "3/10", "1/5"),
        correct_option="3/5",
        explanation="同分母分数相加，分子相加分母不变：2 + 1 = 3，所以答案是 3/5。",
    ),
    GuidedStep(
        id="2",
        prompt="小明练习篮球，上午练了 1/4 小时，下午练了 1/4 小时，总共练了多长时间？",
        options=("1/2 小时", "1/4 小时", "2/4 小时", "1/8 小时"),
        correct_option="1/2 小时",
        explanation="1/4 + 1/4 = 2/4 = 1/2 小时。注意可以化简分数。",
    ),
    GuidedStep(
        id="3",
        prompt="计算：4/7 - 2/7 = ?",
        options=("2/7", "6/7", "2/14", "4/7"),
        correct_option="2/7",
        explanation="同分母分数相减，分子相减分母不变：4 - 2 = 2，所以答案是 2/7。",
    ),
    GuidedStep(
        id="4",
        prompt="在一次音乐会中，小提琴演奏占了 3/8，钢琴演奏占了 2/8，这两种乐器演奏总共占了多少？",
        options=("5/8", "5/16", "1/8", "6/8"),
        correct_option="5/8",
        explanation="3/8 + 2/8 = 5/8，两种乐器演奏总共占了 5/8。",
    ),
    GuidedStep(
        id="5",
        prompt="一幅画的 5/9 已经完成，又完成了 2/9，现在总共完成了多少？",
        options=("7/9", "3/9", "7/18", "5/9"),
        correct_option="7/9",
        explanation="5/9 + 2/9 = 7/9，现在总共完成了 7/9。",
    ),
]


def newton_mindmap(**kwargs) -> MindmapBuilder:
    """Fresh mind-map session on Newton's third law."""
    return MindmapBuilder(NEWTON_THIRD_LAW_STEPS, NEWTON_MINDMAP_NODES, NEWTON_MINDMAP_CONNECTIONS, **kwargs)


def fractions_quiz(unit_id: str = "1", channel: Optional[TutorChannel] = None, **kwargs) -> QuizRunner:
    return QuizRunner(unit_id, FRACTIONS_QUIZ, channel=channel, **kwargs)
