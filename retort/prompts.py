"""System prompt and message construction for rebuttal generation."""

from __future__ import annotations

from retort.schemas import ChatMessage, Role

DEFAULT_INTENSITY_LABEL = "中等"

# Intensity 1-10 -> tone label injected into the system prompt
INTENSITY_LABELS: dict[int, str] = {
    1: "轻微",
    2: "温和",
    3: "一般",
    4: "较重",
    5: "中等",
    6: "较重",
    7: "强烈",
    8: "很强烈",
    9: "非常强烈",
    10: "极度强烈",
}

USER_PREFIX = "对方的话："

SYSTEM_PROMPT_TEMPLATE = """你是一个专业的辩论助手，专门帮助用户生成有力的吵架回复。请根据用户提供的"对方的话"和指定的语气强度，生成3条具有说服力的回复内容。

要求：
1. 回复内容要符合指定的语气强度（{label}）
2. 内容要有逻辑性和说服力
3. 语言要自然流畅，符合日常对话习惯
4. 每条回复都要独立完整
5. 回复长度适中，一般在50-200字之间
6. 避免使用过分的侮辱性词汇，保持适当的争议性

请直接返回3条回复内容，每条用换行分隔，不要包含任何前缀或说明文字。"""


def intensity_label(intensity: int | float) -> str:
    return INTENSITY_LABELS.get(intensity, DEFAULT_INTENSITY_LABEL)


def build_system_prompt(intensity: int | float) -> str:
    return SYSTEM_PROMPT_TEMPLATE.format(label=intensity_label(intensity))


def build_messages(opponent_message: str, intensity: int | float) -> list[ChatMessage]:
    """The two-entry conversation: system instruction, then the opponent's words."""
    return [
        ChatMessage(role=Role.SYSTEM, content=build_system_prompt(intensity)),
        ChatMessage(role=Role.USER, content=f"{USER_PREFIX}{opponent_message}"),
    ]
