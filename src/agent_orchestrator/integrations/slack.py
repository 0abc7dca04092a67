"""Slack Web API integration used as the push channel."""

from dataclasses import dataclass


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


def get_client(token: str | None):
    """Get a Slack WebClient. Returns None if no token provided."""
    if not token:
        return None
    from slack_sdk import WebClient
    return WebClient(token=token)


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
) -> SlackMessage:
    """Send a message to a Slack channel."""
    client = get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    from slack_sdk.errors import SlackApiError

    try:
        response = client.chat_postMessage(
            channel=channel,
            text=text,
            blocks=blocks,
        )
    except SlackApiError as e:
        raise SlackError(f"Slack API error: {e.response['error']}") from e

    return SlackMessage(
        channel=response["channel"],
        ts=response["ts"],
        text=text,
    )


def format_alert(trigger: str, content: str) -> list[dict]:
    """Format an alert as Slack blocks."""
    trigger_emoji = {
        "blocked": ":red_circle:",
        "completed": ":white_check_mark:",
        "error": ":x:",
        "stale_task": ":hourglass:",
        "idle_too_long": ":zzz:",
    }
    emoji = trigger_emoji.get(trigger, ":bell:")
    heading = trigger.replace("_", " ").capitalize()

    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": f"{emoji} *{heading}*\n{content}",
            },
        }
    ]


class SlackPushSender:
    """Pushes alert text to one Slack channel."""

    def __init__(self, token: str, channel: str):
        self.token = token
        self.channel = channel

    def send(self, trigger: str, content: str) -> SlackMessage:
        return send_message(
            self.token,
            self.channel,
            content,
            format_alert(trigger, content),
        )
