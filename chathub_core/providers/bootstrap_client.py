"""会话创建客户端。

一次普通的 HTTP 请求换取 conversationId / clientId / 签名三件套，
之后所有流式交互都基于这组凭据。本模块不做任何重试。
"""

import json
from typing import Any, Dict

import httpx

from chathub_core.domain.exceptions import BootstrapError, MalformedResponseError, NetworkError
from chathub_core.domain.models import SessionHandle
from chathub_core.providers.headers import build_headers

CREATE_PATH = "/turing/conversation/create?bundleVersion=1.864.15"
SIGNATURE_HEADER = "x-sydney-encryptedconversationsignature"


class BootstrapClient:
    """SessionBootstrapper 的 httpx 实现。"""

    name = "bootstrap"

    def __init__(self, settings):
        self._settings = settings

    async def bootstrap(self) -> SessionHandle:
        """创建新会话。

        步骤：
        1. GET 会话创建接口。
        2. 解析 body（失败走 MalformedResponseError）。
        3. 从响应头取签名，缺任何一项则走 BootstrapError。
        """

        url = f"{self._settings.host}{CREATE_PATH}"
        try:
            async with httpx.AsyncClient(**self._client_kwargs()) as client:
                resp = await client.get(url, headers=build_headers(self._settings))
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        body = resp.text
        try:
            data = json.loads(body)
        except json.JSONDecodeError:
            raise MalformedResponseError(
                code="MALFORMED_RESPONSE",
                message=f"/turing/conversation/create: failed to parse response body.\n{body}",
            )
        if not isinstance(data, dict):
            raise MalformedResponseError(code="MALFORMED_RESPONSE", message=body)
        signature = resp.headers.get(SIGNATURE_HEADER) or data.get("encryptedConversationSignature")
        return self._parse_handle(data, signature)

    def _client_kwargs(self) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {"timeout": self._settings.http_timeout, "trust_env": False}
        proxy = getattr(self._settings, "proxy", None)
        if proxy:
            kwargs["proxy"] = proxy
        return kwargs

    @staticmethod
    def _parse_handle(data: Dict[str, Any], signature) -> SessionHandle:
        session_id = data.get("conversationId")
        participant_id = data.get("clientId")
        if not signature or not session_id or not participant_id:
            result = data.get("result") or {}
            if result.get("value"):
                # 例如 "UnauthorizedRequest"
                raise BootstrapError(code=result["value"], message=result.get("message") or result["value"])
            raise BootstrapError(
                code="UNEXPECTED_RESPONSE",
                message=f"Unexpected response:\n{json.dumps(data, indent=2, ensure_ascii=False)}",
            )
        return SessionHandle(
            session_id=session_id,
            participant_id=participant_id,
            session_signature=signature,
            invocation_index=0,
        )
