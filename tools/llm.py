import os
import json
import re
import time
from typing import Any, Dict, List, Optional

from loguru import logger
from openai import AsyncOpenAI

from errors import MalformedResponseError, TransientUpstreamError

MAX_STEPS = 8
SECONDS_PER_DAY = 86400

LEAD_SYSTEM_PROMPT = """You are a CRM analyst. Assess the risk (0-100) of losing this lead and whether an action is needed.

Risk bands:
- 76-100: CRITICAL (no update for more than 7 days)
- 51-75: HIGH (more than 3 days, no tasks)
- 26-50: MEDIUM
- 0-25: LOW

Allowed actions: create_task, update_status, wait.
Use the tools: assess_risk, then score_priority, then recommend_action. Record notable
observations with save_thought and long-lived insights with update_memory."""

BATCH_SYSTEM_PROMPT = """You are a CRM analyst scoring leads in batch mode.

Criteria:
- VIP (budget 500K+): always HIGH priority
- Important (budget 100K+): MEDIUM priority
- Stuck (7+ days without update): HIGH risk
- No tasks (3+ days): MEDIUM risk

Keep reasoning to one line. Return ONLY valid JSON, one result per lead, in input order."""

TOOLS = [
    {
        "type": "function",
        "function": {
            "name": "assess_risk",
            "description": "Assess the risk (0-100) of losing the lead from time since contact, open tasks and engagement",
            "parameters": {
                "type": "object",
                "properties": {
                    "days_since_contact": {"type": "number"},
                    "has_active_tasks": {"type": "boolean"},
                    "engagement_level": {"type": "string", "enum": ["high", "medium", "low"]},
                    "reasoning": {"type": "string"},
                },
                "required": ["days_since_contact", "has_active_tasks", "engagement_level", "reasoning"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "score_priority",
            "description": "Set the lead priority (LOW/MEDIUM/HIGH) from its budget and potential",
            "parameters": {
                "type": "object",
                "properties": {
                    "budget_estimate": {"type": "string", "enum": ["high", "medium", "low", "unknown"]},
                    "reasoning": {"type": "string"},
                },
                "required": ["budget_estimate", "reasoning"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "recommend_action",
            "description": "Recommend the next action for the lead",
            "parameters": {
                "type": "object",
                "properties": {
                    "action_type": {"type": "string", "enum": ["create_task", "update_status", "wait"]},
                    "action_description": {"type": "string"},
                    "timing": {"type": "string", "enum": ["now", "today", "tomorrow", "this_week"]},
                    "task_text": {"type": "string"},
                    "new_status": {"type": "string"},
                    "reasoning": {"type": "string"},
                },
                "required": ["action_type", "action_description", "timing", "reasoning"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "save_thought",
            "description": "Record an internal observation about the lead",
            "parameters": {
                "type": "object",
                "properties": {"thought": {"type": "string"}, "action": {"type": "string"}},
                "required": ["thought", "action"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "update_memory",
            "description": "Update long-term memory about the lead",
            "parameters": {
                "type": "object",
                "properties": {"key": {"type": "string"}, "insight": {"type": "string"}},
                "required": ["key", "insight"],
            },
        },
    },
]


def days_since_update(lead: Dict[str, Any], now: Optional[float] = None) -> int:
    now = now if now is not None else time.time()
    updated_at = lead.get("updated_at")
    if not updated_at:
        return 0
    return int((now - updated_at) // SECONDS_PER_DAY)


def assess_risk(days_since_contact: float, has_active_tasks: bool, engagement_level: str, reasoning: str = "") -> Dict[str, Any]:
    """Rule-based risk score in 0..100 with its level."""
    score = 0
    if days_since_contact > 7:
        score += 50
    elif days_since_contact > 3:
        score += 30
    elif days_since_contact > 1:
        score += 10

    if has_active_tasks:
        score -= 20

    if engagement_level == "low":
        score += 30
    elif engagement_level == "medium":
        score += 15

    score = max(0, min(100, score))

    if score > 75:
        risk_level = "CRITICAL"
    elif score > 50:
        risk_level = "HIGH"
    elif score > 25:
        risk_level = "MEDIUM"
    else:
        risk_level = "LOW"

    return {"risk_score": score, "risk_level": risk_level, "reasoning": reasoning}


def score_priority(budget_estimate: str, reasoning: str = "") -> Dict[str, Any]:
    priority = {"high": "HIGH", "medium": "MEDIUM"}.get(budget_estimate, "LOW")
    return {"priority": priority, "reasoning": reasoning}


def recommend_action(
    action_type: str,
    action_description: str,
    timing: str,
    task_text: Optional[str] = None,
    new_status: Optional[str] = None,
    reasoning: str = "",
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """Turn a recommendation into an executable action payload."""
    due = now if now is not None else time.time()
    if timing == "tomorrow":
        due += SECONDS_PER_DAY
    elif timing == "this_week":
        due += 3 * SECONDS_PER_DAY

    parameters: Dict[str, Any] = {}
    if action_type == "create_task":
        parameters = {"text": task_text or action_description, "complete_till": int(due)}
    elif action_type == "update_status" and new_status:
        parameters = {"status_name": new_status}

    return {
        "action_type": action_type,
        "description": action_description,
        "timing": timing,
        "parameters": parameters,
        "reasoning": reasoning,
    }


def budget_estimate(price: Optional[float]) -> str:
    price = price or 0
    if price >= 500000:
        return "high"
    if price >= 100000:
        return "medium"
    if price > 0:
        return "low"
    return "unknown"


def compact_lead_summary(leads: List[Dict[str, Any]], now: Optional[float] = None) -> str:
    """Positional one-line summary: ``#id(Nd,price,status)`` per lead."""
    return " ".join(
        f"#{lead.get('id')}({days_since_update(lead, now)}d,{lead.get('price') or 0},{lead.get('status_id')})"
        for lead in leads
    )


def _strip_markdown_json(text: str) -> str:
    """Remove ```json ... ``` wrapper if present."""
    text = text.strip()
    if text.startswith("```"):
        text = re.sub(r"^```(?:json)?\s*", "", text)
        text = re.sub(r"\s*```$", "", text)
    return text


def parse_batch_response(content: Optional[str]) -> List[Any]:
    """Accept ``{"results": [...]}`` or a bare array; anything else is malformed."""
    if not content:
        raise MalformedResponseError("Scorer returned an empty response")
    try:
        data = json.loads(_strip_markdown_json(content))
    except json.JSONDecodeError as e:
        raise MalformedResponseError("Scorer reply is not valid JSON") from e

    if isinstance(data, dict):
        data = data.get("results")
    if not isinstance(data, list):
        raise MalformedResponseError("Scorer reply carries no results array")
    return data


class LLMClient:
    """LLM client for single-lead and batch risk scoring."""

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None, base_url: Optional[str] = None, timeout: float = 60):
        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        self.model = model or os.getenv("OPENAI_MODEL", "gpt-4o-mini")
        self.base_url = base_url or os.getenv("OPENAI_BASE_URL")
        self.timeout = timeout
        self._client: Optional[AsyncOpenAI] = None

        if not self.api_key:
            logger.warning("No OpenAI API key provided, using mock mode")

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            kwargs: Dict[str, Any] = {"api_key": self.api_key, "timeout": self.timeout}
            if self.base_url:
                kwargs["base_url"] = self.base_url
            self._client = AsyncOpenAI(**kwargs)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    async def _complete(self, **kwargs) -> Any:
        try:
            return await self.client.chat.completions.create(model=self.model, **kwargs)
        except Exception as e:
            raise TransientUpstreamError(f"Scorer request failed: {e.__class__.__name__}") from e

    async def analyze_lead(
        self,
        lead: Dict[str, Any],
        memory: Optional[List[str]] = None,
        history: Optional[List[Dict[str, Any]]] = None,
        now: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Score one lead with a multi-step tool-calling loop.

        Args:
            lead: Lead with tasks and notes attached
            memory: Stored insights about this lead
            history: Most recent scores, newest first

        Returns:
            Dict with risk_score, risk_level, priority, action_needed,
            recommended_action (optional), reasoning, thoughts and memories
        """
        now = now if now is not None else time.time()
        memory = memory or []
        history = history or []

        if not self.api_key:
            logger.info("Using mock LLM lead analysis")
            return self._mock_analysis(lead, now)

        outcome: Dict[str, Any] = {"thoughts": [], "memories": {}}
        messages: List[Dict[str, Any]] = [
            {"role": "system", "content": self._build_system_prompt(memory, history)},
            {"role": "user", "content": self._build_lead_prompt(lead, now)},
        ]

        final_text = ""
        for _ in range(MAX_STEPS):
            response = await self._complete(messages=messages, tools=TOOLS, temperature=0.1)
            message = response.choices[0].message
            if not message.tool_calls:
                final_text = message.content or ""
                break

            messages.append({
                "role": "assistant",
                "content": message.content,
                "tool_calls": [call.model_dump() for call in message.tool_calls],
            })
            for call in message.tool_calls:
                result = self._run_tool(call.function.name, call.function.arguments, outcome, now)
                messages.append({"role": "tool", "tool_call_id": call.id, "content": json.dumps(result)})
        else:
            logger.warning(f"Lead {lead.get('id')}: tool loop hit {MAX_STEPS} steps")

        return self._finalize(lead, outcome, final_text, now)

    def _run_tool(self, name: str, raw_arguments: str, outcome: Dict[str, Any], now: float) -> Dict[str, Any]:
        try:
            args = json.loads(raw_arguments or "{}")
        except json.JSONDecodeError:
            logger.warning(f"Tool {name} called with unparsable arguments")
            return {"error": "invalid arguments"}

        try:
            if name == "assess_risk":
                result = assess_risk(**args)
                outcome.update(risk_score=result["risk_score"], risk_level=result["risk_level"])
                outcome.setdefault("reasoning", result["reasoning"])
                return result
            if name == "score_priority":
                result = score_priority(**args)
                outcome["priority"] = result["priority"]
                return result
            if name == "recommend_action":
                result = recommend_action(now=now, **args)
                outcome["recommended_action"] = result
                outcome["reasoning"] = result["reasoning"] or outcome.get("reasoning", "")
                return result
            if name == "save_thought":
                outcome["thoughts"].append({"thought": args["thought"], "action": args.get("action")})
                return {"status": "Thought recorded"}
            if name == "update_memory":
                outcome["memories"][args["key"]] = args["insight"]
                return {"status": "Memory updated"}
        except (TypeError, KeyError) as e:
            logger.warning(f"Tool {name} rejected arguments: {e}")
            return {"error": "invalid arguments"}

        logger.warning(f"Unknown tool requested: {name}")
        return {"error": f"unknown tool {name}"}

    def _finalize(self, lead: Dict[str, Any], outcome: Dict[str, Any], final_text: str, now: float) -> Dict[str, Any]:
        if "risk_score" not in outcome:
            fallback = self._mock_analysis(lead, now)
            outcome.setdefault("risk_score", fallback["risk_score"])
            outcome.setdefault("risk_level", fallback["risk_level"])
        if "priority" not in outcome:
            outcome["priority"] = score_priority(budget_estimate(lead.get("price")))["priority"]

        recommended = outcome.get("recommended_action")
        outcome["action_needed"] = bool(recommended) and recommended["action_type"] != "wait"
        outcome["reasoning"] = outcome.get("reasoning") or final_text.strip()
        return outcome

    async def analyze_batch(self, leads: List[Dict[str, Any]], now: Optional[float] = None) -> List[Any]:
        """
        Score up to a batch of leads in a single request.

        Returns results aligned with ``leads`` by position. Raises
        MalformedResponseError or TransientUpstreamError; callers own the fallback.
        """
        now = now if now is not None else time.time()
        if not self.api_key:
            logger.info(f"Using mock batch analysis for {len(leads)} leads")
            return [self._mock_batch_result(lead, now) for lead in leads]

        prompt = f"""Batch analysis of {len(leads)} leads. Return a JSON object with a results array.

Leads: {compact_lead_summary(leads, now)}

Format: {{"results":[{{"lead_id":123,"risk_score":30,"risk_level":"MEDIUM","priority":"LOW","action_needed":false,"recommended_action":"create_task","reasoning":"short justification"}}]}}"""

        response = await self._complete(
            messages=[
                {"role": "system", "content": BATCH_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            temperature=0,
        )
        results = parse_batch_response(response.choices[0].message.content)
        logger.info(f"Batch analysis complete: {len(results)} results")
        return results

    def _build_system_prompt(self, memory: List[str], history: List[Dict[str, Any]]) -> str:
        prompt = LEAD_SYSTEM_PROMPT
        if memory:
            prompt += f"\n\nMemory: {' '.join(memory)[:300]}"
        if history:
            trend = ", ".join(f"{h.get('risk_level')}/{h.get('priority')}" for h in history[:3])
            prompt += f"\nRecent scores (newest first): {trend}"
        return prompt

    def _build_lead_prompt(self, lead: Dict[str, Any], now: float) -> str:
        return f"""Lead #{lead.get('id')} "{lead.get('name')}":
- Updated: {days_since_update(lead, now)} days ago
- Budget: {lead.get('price') or 0}
- Tasks: {len(lead.get('tasks') or [])}
- Notes: {len(lead.get('notes') or [])}
- Status: {lead.get('status_id')}

Use the tools to analyze it."""

    def _mock_analysis(self, lead: Dict[str, Any], now: float) -> Dict[str, Any]:
        """Deterministic rule-based stand-in for the tool loop."""
        days = days_since_update(lead, now)
        has_tasks = any(not t.get("is_completed") for t in lead.get("tasks") or [])
        engagement = "low" if days > 7 else "medium" if days > 3 else "high"
        risk = assess_risk(days, has_tasks, engagement, reasoning=f"No update for {days} days")
        priority = score_priority(budget_estimate(lead.get("price")))["priority"]

        recommended = None
        if risk["risk_score"] > 50 and not has_tasks:
            recommended = recommend_action(
                "create_task", "Contact the client", "tomorrow", reasoning=risk["reasoning"], now=now
            )

        return {
            "risk_score": risk["risk_score"],
            "risk_level": risk["risk_level"],
            "priority": priority,
            "action_needed": recommended is not None,
            "recommended_action": recommended,
            "reasoning": risk["reasoning"],
            "thoughts": [],
            "memories": {},
        }

    def _mock_batch_result(self, lead: Dict[str, Any], now: float) -> Dict[str, Any]:
        analysis = self._mock_analysis(lead, now)
        return {
            "lead_id": lead.get("id"),
            "risk_score": analysis["risk_score"],
            "risk_level": analysis["risk_level"],
            "priority": analysis["priority"],
            "action_needed": analysis["action_needed"],
            "recommended_action": "create_task" if analysis["action_needed"] else None,
            "reasoning": analysis["reasoning"],
        }


# Global LLM client instance
llm_client = LLMClient()
