import os
import itertools
import time
from typing import Any, Dict, List, Mapping, Optional

from loguru import logger
from slack_sdk.errors import SlackApiError
from slack_sdk.signature import SignatureVerifier
from slack_sdk.web.async_client import AsyncWebClient

from errors import ConfigurationMissingError

SECONDS_PER_DAY = 86400

RISK_EMOJI = {
    "CRITICAL": "🔴",
    "HIGH": "🟠",
    "MEDIUM": "🟡",
    "LOW": "🟢",
}


def split_ref(ref: str) -> tuple[str, str]:
    """A message ref is ``channel:ts``."""
    channel, _, ts = ref.partition(":")
    return channel, ts


def describe_issue(days_since: int, has_active_tasks: bool, budget: float) -> str:
    if days_since > 7:
        return f"Stuck: no movement for {days_since} days"
    if not has_active_tasks and days_since > 3:
        return f"No active tasks for {days_since} days"
    if budget > 500000 and days_since > 1:
        return "VIP client is waiting for a reply"
    if budget > 100000 and days_since > 2:
        return "Important client may walk away"
    return f"Needs review ({days_since} days without update)"


def explain_impact(budget: float, days_since: int) -> str:
    if budget > 500000:
        return f"Potentially {budget / 1000:.0f}K at stake"
    if days_since > 7:
        return "High risk of losing the deal"
    if days_since > 3:
        return "Client may go to a competitor"
    return "Closing probability is dropping"


class SlackNotifier:
    """Slack integration for operator proposals, alerts and digests."""

    def __init__(self, token: Optional[str] = None, channel: Optional[str] = None, timeout: int = 20):
        self.token = token or os.getenv("SLACK_BOT_TOKEN")
        self._manager_channel = channel or os.getenv("SLACK_MANAGER_CHANNEL")
        self.signing_secret = os.getenv("SLACK_SIGNING_SECRET")
        self.timeout = timeout
        self._client: Optional[AsyncWebClient] = None
        self._mock_counter = itertools.count(1)

        if not self.token:
            logger.warning("No Slack token provided, using mock mode")

    @property
    def client(self) -> AsyncWebClient:
        if self._client is None:
            self._client = AsyncWebClient(token=self.token, timeout=self.timeout)
        return self._client

    @property
    def manager_channel(self) -> str:
        if not self._manager_channel:
            raise ConfigurationMissingError("Operator channel is not configured")
        return self._manager_channel

    @property
    def has_manager_channel(self) -> bool:
        return bool(self._manager_channel)

    def verify_request(self, body: str, headers: Mapping[str, str]) -> bool:
        """Check the Slack request signature; always passes when no signing secret is set."""
        if not self.signing_secret:
            return True
        return SignatureVerifier(self.signing_secret).is_valid_request(body, dict(headers))

    def _mock_ref(self, channel: str) -> str:
        return f"{channel}:mock_ts_{next(self._mock_counter)}"

    async def send_message(self, channel: str, text: str, blocks: Optional[List[Dict[str, Any]]] = None) -> Optional[str]:
        """
        Post a message to a channel.

        Returns:
            Message ref (``channel:ts``) or None if delivery failed
        """
        if not self.token:
            logger.info("Mock mode: would send Slack message")
            return self._mock_ref(channel)

        try:
            kwargs: Dict[str, Any] = {"channel": channel, "text": text}
            if blocks:
                kwargs["blocks"] = blocks
            response = await self.client.chat_postMessage(**kwargs)
            ref = f"{response['channel']}:{response['ts']}"
            logger.info(f"Slack message sent to {channel}: {ref}")
            return ref
        except SlackApiError as e:
            logger.error(f"Slack message failed: {e.response.get('error')}")
            return None
        except Exception as e:
            logger.error(f"Slack message failed: {e}")
            return None

    async def send_proposal(self, channel: str, action: Any, lead: Dict[str, Any], now: Optional[float] = None) -> Optional[str]:
        """
        Send an interactive approval request for a pending action.

        Args:
            channel: Operator channel
            action: PendingAction row
            lead: Lead the action targets

        Returns:
            Message ref or None if delivery failed
        """
        message = self._build_proposal_message(action, lead, now)
        return await self.send_message(channel, message["text"], message["blocks"])

    async def update_message(self, ref: str, text: str) -> bool:
        """Replace the text (and drop the buttons) of a message sent earlier."""
        if not self.token:
            logger.info("Mock mode: would update Slack message")
            return True

        channel, ts = split_ref(ref)
        try:
            await self.client.chat_update(channel=channel, ts=ts, text=text, blocks=[])
            logger.info(f"Slack message updated: {ref}")
            return True
        except Exception as e:
            logger.error(f"Slack message update failed: {e}")
            return False

    async def close(self) -> None:
        if self._client is not None and self._client.session is not None:
            await self._client.session.close()

    def _build_proposal_message(self, action: Any, lead: Dict[str, Any], now: Optional[float] = None) -> Dict[str, Any]:
        """Build Slack blocks for an approval request."""
        now = now if now is not None else time.time()
        updated_at = lead.get("updated_at")
        days_since = int((now - updated_at) // SECONDS_PER_DAY) if updated_at else 0
        budget = lead.get("price") or 0
        has_active_tasks = any(not t.get("is_completed") for t in lead.get("tasks") or [])

        score = action.risk_score or 0
        level = "CRITICAL" if score > 70 else "HIGH" if score > 40 else "MEDIUM"
        emoji = RISK_EMOJI[level]
        name = lead.get("name") or f"Lead #{action.lead_id}"

        text = f"{emoji} Needs attention: {name} (#{action.lead_id})"

        fields = [
            {"type": "mrkdwn", "text": f"*Issue:*\n{describe_issue(days_since, has_active_tasks, budget)}"},
            {"type": "mrkdwn", "text": f"*Why it matters:*\n{explain_impact(budget, days_since)}"},
            {"type": "mrkdwn", "text": f"*Last contact:*\n{days_since} days ago"},
            {"type": "mrkdwn", "text": f"*Active tasks:*\n{'Yes' if has_active_tasks else 'No'}"},
            {"type": "mrkdwn", "text": f"*Priority:*\n{action.priority or 'MEDIUM'}"},
            {"type": "mrkdwn", "text": f"*Risk:*\n{score}/100"},
        ]
        if budget > 0:
            fields.append({"type": "mrkdwn", "text": f"*Budget:*\n{budget:,}"})

        blocks: List[Dict[str, Any]] = [
            {"type": "header", "text": {"type": "plain_text", "text": f"{emoji} Needs attention"}},
            {"type": "section", "text": {"type": "mrkdwn", "text": f"*{name}* (#{action.lead_id})"}},
            {"type": "section", "fields": fields[:10]},
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*Recommendation:*\n{(action.reasoning or 'Review the lead')[:300]}"},
            },
        ]

        action_line = self._describe_action(action)
        if action_line:
            blocks.append({"type": "section", "text": {"type": "mrkdwn", "text": action_line}})

        value = str(action.id)
        blocks.append({
            "type": "actions",
            "elements": [
                {"type": "button", "text": {"type": "plain_text", "text": "Approve"},
                 "style": "primary", "value": value, "action_id": "approve_action"},
                {"type": "button", "text": {"type": "plain_text", "text": "Reject"},
                 "style": "danger", "value": value, "action_id": "reject_action"},
                {"type": "button", "text": {"type": "plain_text", "text": "Details"},
                 "value": str(action.lead_id), "action_id": "details_lead"},
                {"type": "button", "text": {"type": "plain_text", "text": "Snooze 1h"},
                 "value": value, "action_id": "snooze_action"},
            ],
        })

        return {"text": text, "blocks": blocks}

    @staticmethod
    def _describe_action(action: Any) -> str:
        data = action.action_data or {}
        if action.action_type == "create_task":
            return f"*Task:* {data.get('text') or 'Contact the client'}"
        if action.action_type == "update_status":
            return f"*New status:* {data.get('status_name') or data.get('new_status_id')}"
        if action.action_type == "add_note":
            return f"*Note:* {data.get('text', '')[:200]}"
        return ""


# Global Slack notifier instance
slack_notifier = SlackNotifier()
