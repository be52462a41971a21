"""Thin wrapper utilities around the Slack WebClient."""

from __future__ import annotations

from typing import Any, List, Mapping, Sequence

from slack_sdk import WebClient


class SlackClient:
    """Encapsulate Slack WebClient interactions for easier testing."""

    def __init__(self, *, token: str | None = None, client: WebClient | None = None) -> None:
        if client is None and token is None:
            raise ValueError("Either an instantiated client or a bot token must be provided.")

        self._client = client or WebClient(token=token)

    @property
    def client(self) -> WebClient:
        """Expose the underlying WebClient for advanced use cases."""

        return self._client

    def post_message(
        self,
        *,
        channel: str,
        text: str,
        blocks: Sequence[Mapping[str, Any]] | None = None,
        thread_ts: str | None = None,
    ) -> Mapping[str, Any]:
        """Post a message, optionally with Block Kit content or into a thread."""

        kwargs: dict[str, Any] = {"channel": channel, "text": text}
        if blocks is not None:
            kwargs["blocks"] = list(blocks)
        if thread_ts:
            kwargs["thread_ts"] = thread_ts
        return self._client.chat_postMessage(**kwargs)

    def update_message(
        self,
        *,
        channel: str,
        ts: str,
        text: str,
        blocks: Sequence[Mapping[str, Any]],
    ) -> Mapping[str, Any]:
        """Update an existing Slack message."""

        return self._client.chat_update(channel=channel, ts=ts, text=text, blocks=list(blocks))

    def post_ephemeral(self, *, channel: str, user: str, text: str) -> Mapping[str, Any]:
        """Post a message only *user* can see."""

        return self._client.chat_postEphemeral(channel=channel, user=user, text=text)

    def list_channels(self, *, types: str = "public_channel,private_channel", limit: int = 200) -> List[Mapping[str, Any]]:
        """Return the channels visible to the bot, following pagination cursors."""

        channels: List[Mapping[str, Any]] = []
        cursor: str | None = None
        while True:
            kwargs: dict[str, Any] = {"types": types, "limit": limit}
            if cursor:
                kwargs["cursor"] = cursor
            response = self._client.conversations_list(**kwargs)
            channels.extend(response.get("channels") or [])
            cursor = (response.get("response_metadata") or {}).get("next_cursor")
            if not cursor:
                return channels

    def find_channel(self, name: str) -> Mapping[str, Any] | None:
        """Look up a channel by name, with or without the leading ``#``."""

        wanted = name.lstrip("#")
        for channel in self.list_channels():
            if channel.get("name") == wanted or channel.get("id") == wanted:
                return channel
        return None
