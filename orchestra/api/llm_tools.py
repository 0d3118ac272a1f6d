"""LLM primitive tools: one-shot completions through the agent's own model.

Each tool sends a fixed instruction asking for a JSON-only reply.  A reply
that parses as a JSON object is returned with ``status`` added; anything
else comes back as ``raw_response``.  ``llm.extract_structured_data`` nests
its reply under ``extracted_data`` (or ``data`` when it is not JSON).
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any

from orchestra.agents.schemas import Message
from orchestra.api.tools import ToolContext, ToolFunc, check_arguments, tool_error, tool_result
from orchestra.errors import UpstreamError

logger = logging.getLogger(__name__)

PromptBuilder = Callable[[dict[str, Any]], tuple[str, str]]


def _text_schema(**extra: Any) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": {"text": {"type": "string", "minLength": 1}, **extra},
        "required": ["text"],
    }


def _joined(values: list[Any]) -> str:
    return ", ".join(str(v) for v in values)


# ---------------------------------------------------------------------------
# Prompt builders
# ---------------------------------------------------------------------------


def _sentiment(args: dict[str, Any]) -> tuple[str, str]:
    return (
        "You are a sentiment analyzer. Analyze the sentiment of the given text and respond with ONLY "
        'a JSON object in this exact format:\n{"sentiment": "positive|negative|neutral", '
        '"confidence": 0.0-1.0, "explanation": "brief reason"}',
        f"Analyze the sentiment of: {args['text']}",
    )


def _classify(args: dict[str, Any]) -> tuple[str, str]:
    return (
        "You are a text classifier. Classify the given text into one of these categories: "
        f"{_joined(args['categories'])}.\nRespond with ONLY a JSON object: "
        '{"category": "chosen_category", "confidence": 0.0-1.0, "reasoning": "brief explanation"}',
        f"Classify this text: {args['text']}",
    )


def _moderate(args: dict[str, Any]) -> tuple[str, str]:
    return (
        "You are a content moderator. Check the text for inappropriate content, spam, harassment, "
        "hate speech, or policy violations.\nRespond with ONLY a JSON object: "
        '{"safe": true/false, "issues": ["list", "of", "issues"], "severity": "none|low|medium|high", '
        '"explanation": "brief description"}',
        f"Moderate this content: {args['text']}",
    )


def _quality(args: dict[str, Any]) -> tuple[str, str]:
    criteria = _joined(args.get("criteria") or []) or "clarity, coherence, grammar, relevance, and completeness"
    return (
        f"You are a text quality evaluator. Rate the text quality based on: {criteria}.\n"
        'Respond with ONLY a JSON object: {"score": 0-100, "breakdown": {"criterion": score}, '
        '"feedback": "improvement suggestions"}',
        f"Rate the quality of: {args['text']}",
    )


def _summarize(args: dict[str, Any]) -> tuple[str, str]:
    length = f" Keep it under {int(args['max_length'])} words." if args.get("max_length") else ""
    style = args.get("style") or "paragraph"
    return (
        f"You are a text summarizer. Create a concise summary in {style} format.{length}\n"
        'Respond with ONLY a JSON object: {"summary": "the summary text", "key_points": ["main", "points"], '
        '"word_count": number}',
        f"Summarize this text: {args['text']}",
    )


def _rewrite(args: dict[str, Any]) -> tuple[str, str]:
    parts = [f"{label}: {args[key]}" for key, label in (("tone", "tone"), ("style", "style"), ("audience", "target audience")) if args.get(key)]
    instructions = ", ".join(parts) or "maintaining the original meaning"
    return (
        f"You are a text rewriter. Rewrite the text with: {instructions}.\n"
        'Respond with ONLY a JSON object: {"rewritten_text": "the new text", "changes_made": ["list", "of", "changes"], '
        '"improvement_score": 0-10}',
        f"Rewrite this text: {args['text']}",
    )


def _tags(args: dict[str, Any]) -> tuple[str, str]:
    limit = int(args.get("max_tags") or 10)
    return (
        f"You are a tag generator. Extract up to {limit} relevant tags/keywords from the text.\n"
        'Respond with ONLY a JSON object: {"tags": ["tag1", "tag2"], "categories": ["main", "categories"], '
        '"relevance_scores": {"tag": 0.0-1.0}}',
        f"Generate tags for: {args['text']}",
    )


def _title(args: dict[str, Any]) -> tuple[str, str]:
    style = args.get("style") or "clear and engaging"
    length = f" Keep it under {int(args['max_length'])} characters." if args.get("max_length") else ""
    return (
        f"You are a title generator. Create a {style} title.{length}\n"
        'Respond with ONLY a JSON object: {"title": "main title", "alternatives": ["alt1", "alt2"], '
        '"subtitle": "optional subtitle"}',
        f"Generate a title for: {args['text']}",
    )


def _condition(args: dict[str, Any]) -> tuple[str, str]:
    return (
        "You are a condition evaluator. Evaluate if the given text meets the specified condition.\n"
        'Respond with ONLY a JSON object: {"result": true/false, "confidence": 0.0-1.0, '
        '"reasoning": "explanation", "evidence": ["supporting", "facts"]}',
        f"Text: {args['text']}\n\nCondition to evaluate: {args['condition']}",
    )


def _rank(args: dict[str, Any]) -> tuple[str, str]:
    return (
        "You are a ranking system. Rank the given items based on the specified criteria.\n"
        'Respond with ONLY a JSON object: {"ranked_items": [ordered_list], "scores": {"item": score}, '
        '"reasoning": {"item": "why ranked here"}}',
        f"Items to rank: {json.dumps(args['items'])}\n\nRanking criteria: {args['criteria']}",
    )


def _recommend(args: dict[str, Any]) -> tuple[str, str]:
    goal = f" Goal: {args['goal']}" if args.get("goal") else ""
    return (
        "You are an action recommender. Based on the context, recommend the best action from the "
        'available options.\nRespond with ONLY a JSON object: {"recommended_action": "chosen_action", '
        '"confidence": 0.0-1.0, "reasoning": "why this action", "risks": ["potential", "issues"], '
        '"alternatives": ["other", "viable", "options"]}',
        f"Context: {args['context']}\n\nAvailable actions: {_joined(args['actions'])}{goal}",
    )


def _structured(args: dict[str, Any]) -> tuple[str, str]:
    schema = args.get("schema")
    target = f"this exact schema: {json.dumps(schema)}" if schema else "appropriate structured format"
    return (
        f"You are a data extractor. Convert the unstructured text into {target}.\n"
        "Respond with ONLY a JSON object containing the extracted structured data. "
        'Include a "_metadata" field with extraction confidence and any issues.',
        f"Extract structured data from: {args['text']}",
    )


def _entities(args: dict[str, Any]) -> tuple[str, str]:
    types = args.get("entity_types") or []
    what = f"these entity types: {_joined(types)}" if types else "all named entities (people, organizations, locations, dates)"
    return (
        f"You are an entity extractor. Extract {what} from the text.\n"
        'Respond with ONLY a JSON object: {"entities": {"type": ["entity1", "entity2"]}, '
        '"relationships": [{"from": "entity1", "to": "entity2", "type": "relation"}], "count": number_of_entities}',
        f"Extract entities from: {args['text']}",
    )


_PRIMITIVES: dict[str, tuple[dict[str, Any], PromptBuilder]] = {
    "llm.analyze_sentiment": (_text_schema(), _sentiment),
    "llm.classify_text": (
        {**_text_schema(categories={"type": "array", "minItems": 1}), "required": ["text", "categories"]},
        _classify,
    ),
    "llm.moderate_content": (_text_schema(), _moderate),
    "llm.score_quality": (_text_schema(criteria={"type": "array"}), _quality),
    "llm.summarize_text": (_text_schema(max_length={"type": "number"}, style={"type": "string"}), _summarize),
    "llm.rewrite_text": (
        _text_schema(tone={"type": "string"}, style={"type": "string"}, audience={"type": "string"}),
        _rewrite,
    ),
    "llm.generate_tags": (_text_schema(max_tags={"type": "number"}), _tags),
    "llm.generate_title": (_text_schema(style={"type": "string"}, max_length={"type": "number"}), _title),
    "llm.evaluate_condition": (
        {**_text_schema(condition={"type": "string", "minLength": 1}), "required": ["text", "condition"]},
        _condition,
    ),
    "llm.rank_items": (
        {
            "type": "object",
            "properties": {"items": {"type": "array", "minItems": 1}, "criteria": {"type": "string", "minLength": 1}},
            "required": ["items", "criteria"],
        },
        _rank,
    ),
    "llm.recommend_action": (
        {
            "type": "object",
            "properties": {
                "context": {"type": "string", "minLength": 1},
                "actions": {"type": "array", "minItems": 1},
                "goal": {"type": "string"},
            },
            "required": ["context", "actions"],
        },
        _recommend,
    ),
    "llm.extract_entities": (_text_schema(entity_types={"type": "array"}), _entities),
    "llm.extract_structured_data": (_text_schema(schema={"type": "object"}), _structured),
}


def _make_tool(key: str, schema: dict[str, Any], build: PromptBuilder, wrap: bool = False) -> ToolFunc:
    async def run(ctx: ToolContext, arguments: dict[str, Any]) -> str:
        if err := check_arguments(arguments, schema):
            return tool_error(err)
        if ctx.completer is None:
            return tool_error("no language model available for this agent")

        system, user = build(arguments)
        try:
            response = await ctx.completer.chat(
                [Message(role="system", content=system), Message(role="user", content=user)],
                [],
                "none",
            )
        except UpstreamError as e:
            return tool_error(str(e))

        content = getattr(response, "text", "")
        try:
            parsed = json.loads(content)
        except (json.JSONDecodeError, TypeError):
            parsed = None
        if not isinstance(parsed, dict):
            logger.debug("%s returned non-JSON reply", key)
            return tool_result({"status": "success", ("data" if wrap else "raw_response"): content})
        if wrap:
            return tool_result({"status": "success", "extracted_data": parsed})
        parsed["status"] = "success"
        return tool_result(parsed)

    run.__name__ = run.__qualname__ = key.replace(".", "_")
    return run


# Structured extraction nests the model reply instead of merging into it.
_WRAPPED = {"llm.extract_structured_data"}

TOOLS: dict[str, ToolFunc] = {
    key: _make_tool(key, schema, build, wrap=key in _WRAPPED) for key, (schema, build) in _PRIMITIVES.items()
}
