"""Minimal demonstration of a threaded conversation."""

import asyncio
import sys

from chathub_core.api.service import send_message
from chathub_core.domain.models import TurnOptions


async def main() -> None:
    first = await send_message(
        "你好，简单介绍一下你自己",
        TurnOptions(new_conversation=True, on_progress=lambda t: print(t, end="", flush=True)),
    )
    print()
    # 带上 key 与 messageId 继续同一个线程
    follow_up = await send_message(
        "再用一句话总结一下",
        TurnOptions(
            conversation_key=first["jailbreakConversationId"],
            parent_message_id=first["messageId"],
        ),
    )
    print("Agent:", follow_up["response"])


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        sys.exit(130)
