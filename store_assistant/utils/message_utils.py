from typing import List, Dict
from langchain_core.messages import HumanMessage, AIMessage, SystemMessage, BaseMessage

from store_assistant.models import TurnRecord


def turns_to_langchain_messages(turns: List[TurnRecord], limit: int = 3) -> List[BaseMessage]:
    """Convert the last `limit` stored turns into alternating Human/AI messages"""
    messages: List[BaseMessage] = []
    if limit <= 0:
        return messages
    for turn in turns[-limit:]:
        messages.append(HumanMessage(content=turn.question))
        if turn.answer_summary:
            messages.append(AIMessage(content=turn.answer_summary))
    return messages


def convert_from_langchain_messages(messages: List[BaseMessage]) -> List[Dict[str, str]]:
    """Convert from Langchain message format to API format"""
    history = []
    for msg in messages:
        if isinstance(msg, HumanMessage):
            history.append({'role': 'user', 'content': msg.content})
        elif isinstance(msg, AIMessage):
            history.append({'role': 'assistant', 'content': msg.content})
        elif isinstance(msg, SystemMessage):
            history.append({'role': 'system', 'content': msg.content})
    return history


def format_transcript(messages: List[BaseMessage]) -> str:
    """Render messages as a plain transcript block for inclusion in a prompt"""
    lines = []
    for entry in convert_from_langchain_messages(messages):
        speaker = "Staff" if entry['role'] == 'user' else "Assistant"
        if entry['role'] == 'system':
            speaker = "System"
        lines.append(f"{speaker}: {entry['content']}")
    return "\n".join(lines)
