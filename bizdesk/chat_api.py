"""
Chat endpoints of the backend API.

Thin wrappers returning the decoded JSON bodies. A ``ChatApi`` is bound to
one bearer token: the BFF builds one per request from the caller's session,
library use falls back to the client's token store.
"""

from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from .api_client import ApiClient

# (filename, content, content_type) as accepted by httpx multipart uploads
MediaFile = Tuple[str, Union[bytes, Any], str]


class ChatApi:
    """Conversations, customers, templates and stats."""

    def __init__(self, api: ApiClient, token: Optional[str] = None) -> None:
        self.api = api
        self.token = token

    async def _call(
        self,
        path: str,
        method: str = "GET",
        body: Optional[Mapping[str, Any]] = None,
        params: Optional[Mapping[str, Any]] = None,
        files: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        return await self.api.request(
            path, method, body, token=self.token, params=params, files=files
        )

    # Conversations

    async def get_conversations(self, params: Optional[Mapping[str, Any]] = None) -> Any:
        return await self._call("/chat/conversations", params=params)

    async def get_conversation(self, conversation_id: str) -> Any:
        return await self._call(f"/chat/conversations/{conversation_id}")

    async def send_message(
        self,
        conversation_id: str,
        payload: Mapping[str, Any],
        media_file: Optional[MediaFile] = None,
    ) -> Any:
        """
        Send a message into a conversation.

        With ``media_file`` the payload goes out as multipart form fields
        alongside the upload; otherwise as JSON.
        """
        path = f"/chat/conversations/{conversation_id}/messages"
        if media_file is not None:
            return await self._call(path, "POST", payload, files={"media_file": media_file})
        return await self._call(path, "POST", payload)

    async def assign_conversation(self, conversation_id: str, agent_id: str) -> Any:
        return await self._call(
            f"/chat/conversations/{conversation_id}/assign", "PUT", {"agent_id": agent_id}
        )

    async def close_conversation(self, conversation_id: str) -> Any:
        return await self._call(f"/chat/conversations/{conversation_id}/close", "PUT", {})

    async def reopen_conversation(self, conversation_id: str) -> Any:
        return await self._call(f"/chat/conversations/{conversation_id}/reopen", "PUT", {})

    async def add_conversation_tags(self, conversation_id: str, tags: List[str]) -> Any:
        return await self._call(
            f"/chat/conversations/{conversation_id}/tags", "POST", {"tags": tags}
        )

    async def remove_conversation_tags(self, conversation_id: str, tags: List[str]) -> Any:
        return await self._call(
            f"/chat/conversations/{conversation_id}/tags", "DELETE", {"tags": tags}
        )

    async def add_conversation_note(self, conversation_id: str, note: str) -> Any:
        return await self._call(
            f"/chat/conversations/{conversation_id}/notes", "POST", {"note": note}
        )

    async def initiate_conversation(self, payload: Mapping[str, Any]) -> Any:
        return await self._call("/chat/conversations/initiate", "POST", payload)

    async def start_or_continue_conversation(self, payload: Mapping[str, Any]) -> Any:
        return await self._call("/chat/conversations/start-or-continue", "POST", payload)

    # Customers

    async def get_available_customers(
        self,
        platform: str,
        search: Optional[str] = None,
        page: Optional[int] = None,
        per_page: Optional[int] = None,
    ) -> Any:
        return await self._call(
            "/chat/customers/available",
            params={"platform": platform, "search": search, "page": page, "per_page": per_page},
        )

    async def get_customer_by_phone(self, phone: str, platform: str) -> Any:
        return await self._call(
            "/chat/customers/by-phone", params={"phone": phone, "platform": platform}
        )

    # Templates

    async def get_templates(self, params: Optional[Mapping[str, Any]] = None) -> Any:
        return await self._call("/chat/templates", params=params)

    async def get_template(self, template_id: str) -> Any:
        return await self._call(f"/chat/templates/{template_id}")

    async def create_template(self, payload: Mapping[str, Any]) -> Any:
        return await self._call("/chat/templates", "POST", payload)

    async def update_template(self, template_id: str, payload: Mapping[str, Any]) -> Any:
        return await self._call(f"/chat/templates/{template_id}", "PUT", payload)

    async def delete_template(self, template_id: str) -> Any:
        return await self._call(f"/chat/templates/{template_id}", "DELETE")

    async def activate_template(self, template_id: str) -> Any:
        return await self._call(f"/chat/templates/{template_id}/activate", "PUT", {})

    async def deactivate_template(self, template_id: str) -> Any:
        return await self._call(f"/chat/templates/{template_id}/deactivate", "PUT", {})

    async def preview_template(self, template_id: str, variables: Dict[str, str]) -> Any:
        return await self._call(
            f"/chat/templates/{template_id}/preview", "POST", {"variables": variables}
        )

    # Stats

    async def get_chat_stats(self, params: Optional[Mapping[str, Any]] = None) -> Any:
        return await self._call("/chat/stats", params=params)
