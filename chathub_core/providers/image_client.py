"""图片识别相关的 HTTP 协作方。

- resolve: 把图片 URL 下载并转成 base64。
- upload: 把 base64 图片上传到 blob 存储，得到 blobId / processBlobId，
  之后拼成 imageUrl / originalImageUrl 放进对话请求。
"""

import base64
import json
from typing import Any, Dict

import httpx

from chathub_core.domain.exceptions import ApiError, NetworkError
from chathub_core.domain.models import ImageUploadResult
from chathub_core.providers.headers import REFERER, cookie_header

UPLOAD_URL = "https://www.bing.com/images/kblob"
IMAGE_BASE_URL = "https://www.bing.com/images/blob?bcid="


def blob_url(blob_id: str) -> str:
    return f"{IMAGE_BASE_URL}{blob_id}"


class ImageClient:
    """ImageResolver + ImageUploader 的 httpx 实现。"""

    name = "image"

    def __init__(self, settings):
        self._settings = settings

    async def resolve(self, image_url: str) -> str:
        try:
            async with httpx.AsyncClient(**self._client_kwargs()) as client:
                resp = await client.get(image_url)
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        if resp.status_code >= 400:
            raise ApiError(
                code="IMAGE_FETCH_ERROR",
                message=f"HTTP error! Error: {resp.reason_phrase}, Status: {resp.status_code}",
                http_status=resp.status_code,
            )
        return base64.b64encode(resp.content).decode("ascii")

    async def upload(self, image_base64: str) -> ImageUploadResult:
        knowledge_request = {
            "imageInfo": {},
            "knowledgeRequest": {
                "invokedSkills": ["ImageById"],
                "subscriptionId": "Bing.Chat.Multimodal",
                # 不开 enableFaceBlur 拿不到 processBlobId
                "invokedSkillsRequestData": {"enableFaceBlur": True},
                "convoData": {"convoid": "", "convotone": "Creative"},
            },
        }
        headers = {
            "accept": "*/*",
            "Referer": f"{REFERER}&FORM=hpcodx",
            "Referrer-Policy": "origin-when-cross-origin",
        }
        cookie = cookie_header(self._settings)
        if cookie:
            headers["cookie"] = cookie
        files = {
            "knowledgeRequest": (None, json.dumps(knowledge_request)),
            "imageBase64": (None, image_base64),
        }
        try:
            async with httpx.AsyncClient(**self._client_kwargs()) as client:
                resp = await client.post(UPLOAD_URL, files=files, headers=headers)
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        if resp.status_code >= 400:
            raise ApiError(
                code="IMAGE_UPLOAD_ERROR",
                message=f"HTTP error! Error: {resp.reason_phrase}, Status: {resp.status_code}",
                http_status=resp.status_code,
            )
        try:
            data = resp.json()
        except ValueError:
            raise ApiError(code="IMAGE_UPLOAD_ERROR", message=f"Unparsable upload response: {resp.text[:200]}")
        blob_id = data.get("blobId") if isinstance(data, dict) else None
        if not blob_id:
            raise ApiError(code="IMAGE_UPLOAD_ERROR", message=f"Unexpected upload response: {data}")
        return ImageUploadResult(
            blob_id=blob_id,
            process_blob_id=data.get("processedBlobId") or data.get("processBlobId") or "",
        )

    def _client_kwargs(self) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {"timeout": self._settings.http_timeout, "trust_env": False}
        proxy = getattr(self._settings, "proxy", None)
        if proxy:
            kwargs["proxy"] = proxy
        return kwargs
