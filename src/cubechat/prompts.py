import json
from typing import Any, Iterable

from cubechat.models import ChatFeature, ChatMessage, Role


class Prompts:
    base_system = """You are an assistant built into an Elasticsearch administration tool.
Answer concisely and accurately. Use Markdown, and put any JSON or Query DSL in fenced code blocks.
"""

    features = {
        ChatFeature.GENERAL_CHAT: "Help the user with any Elasticsearch or general question.",
        ChatFeature.QUERY_GENERATION: """Translate the user's request into an Elasticsearch Query DSL request body.
Reply with a single JSON object inside a ```json code block, followed by a one-sentence explanation.""",
        ChatFeature.DATA_ANALYSIS: """Analyse the data the user provides and answer their question about it.
Point out patterns, outliers and anything that needs attention.""",
        ChatFeature.QUERY_OPTIMIZATION: """Review the Elasticsearch query the user provides and suggest an optimized version.
Return the improved query in a ```json code block and list each change with its reason.""",
        ChatFeature.ERROR_EXPLANATION: """Explain the Elasticsearch error the user provides.
List the likely causes and concrete steps to fix it.""",
    }

    dsl_request = """Natural language request:
{request}
{context}"""

    analyze_request = """Data:
```json
{data}
```

Question: {question}"""

    optimize_request = """Query to optimize:
```json
{query}
```"""

    explain_request = """Error:
{error}
{context}"""


def _format_context(context: Any) -> str:
    if context is None or context == "":
        return ""
    if isinstance(context, str):
        return f"\nContext:\n{context}"
    return f"\nContext:\n```json\n{json.dumps(context, indent=2, ensure_ascii=False, default=str)}\n```"


def system_prompt(feature: ChatFeature) -> str:
    return f"{Prompts.base_system}\n{Prompts.features[feature]}"


def _transcript(history: Iterable[ChatMessage], max_history: int) -> list[str]:
    turns = [
        m
        for m in history
        if not m.is_streaming and not m.error and m.content.strip() and m.role != Role.SYSTEM
    ]
    if max_history <= 0:
        return []
    lines = []
    for message in turns[-max_history:]:
        speaker = "User" if message.role == Role.USER else "Assistant"
        lines.append(f"{speaker}: {message.content.strip()}")
    return lines


def build_prompt(
    feature: ChatFeature,
    history: Iterable[ChatMessage],
    user_text: str,
    max_history: int = 20,
) -> str:
    parts = [system_prompt(feature)]
    lines = _transcript(history, max_history)
    if lines:
        parts.append("Conversation so far:\n" + "\n\n".join(lines))
    parts.append(f"User: {user_text}\n\nAssistant:")
    return "\n\n".join(parts)


def dsl_query_prompt(natural_language: str, context: Any = None) -> str:
    body = Prompts.dsl_request.format(request=natural_language, context=_format_context(context))
    return build_prompt(ChatFeature.QUERY_GENERATION, (), body.strip(), max_history=0)


def analyze_data_prompt(data: Any, question: str) -> str:
    if isinstance(data, str):
        rendered = data
    else:
        rendered = json.dumps(data, indent=2, ensure_ascii=False, default=str)
    body = Prompts.analyze_request.format(data=rendered, question=question)
    return build_prompt(ChatFeature.DATA_ANALYSIS, (), body, max_history=0)


def optimize_query_prompt(query: str) -> str:
    body = Prompts.optimize_request.format(query=query)
    return build_prompt(ChatFeature.QUERY_OPTIMIZATION, (), body, max_history=0)


def explain_error_prompt(error: str, context: Any = None) -> str:
    body = Prompts.explain_request.format(error=error, context=_format_context(context))
    return build_prompt(ChatFeature.ERROR_EXPLANATION, (), body.strip(), max_history=0)
