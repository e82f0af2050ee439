import asyncio

import pytest

from conftest import FakeImageGenerator, FakeTransport, SettingsStub, bot_message, partial_event, terminal_event

from chathub_core.agents.stream_assembler import (
    MODERATION_PLACEHOLDER,
    STOP_TOKEN,
    AssemblerState,
    StreamAssembler,
    format_image_refs,
)
from chathub_core.domain.exceptions import (
    ModerationError,
    ProtocolError,
    SessionInvalidError,
    TransportError,
    TurnCancelledError,
    TurnTimeoutError,
)
from chathub_core.transport.session import TransportSession


def _assembler(transport, **kwargs):
    chunks = []
    kwargs.setdefault("timeout", 1.0)
    assembler = StreamAssembler(transport, on_progress=chunks.append, **kwargs)
    return assembler, chunks


def _image_message(prompt="a cat"):
    return {"author": "bot", "contentType": "IMAGE", "text": prompt, "messageId": "img-1"}


@pytest.mark.asyncio
async def test_progress_deltas_and_resolve():
    transport = FakeTransport([
        partial_event("Hel"),
        partial_event("Hello"),
        partial_event("Hello"),
        terminal_event([bot_message("Hello")], conversationExpiryTime="2030-01-01T00:00:00Z"),
    ])
    assembler, chunks = _assembler(transport)

    reply = await assembler.run()

    assert chunks == ["Hel", "lo"]
    assert "".join(chunks) == reply.final_text == "Hello"
    assert reply.expiry_time == "2030-01-01T00:00:00Z"
    assert assembler.state is AssemblerState.RESOLVED
    assert transport.close_calls == 1


@pytest.mark.asyncio
async def test_ignores_apology_and_foreign_partials():
    transport = FakeTransport([
        {"type": 6},
        partial_event("sorry", contentOrigin="Apology"),
        {"type": 1, "arguments": [{"messages": [{"author": "user", "text": "echo"}]}]},
        {"type": 1, "arguments": [{}]},
        partial_event("ok"),
        terminal_event([bot_message("ok")]),
    ])
    assembler, chunks = _assembler(transport)

    reply = await assembler.run()

    assert chunks == ["ok"]
    assert reply.final_text == "ok"


@pytest.mark.asyncio
async def test_stop_token_freezes_reply_in_threaded_mode():
    leaked = f"Hi there{STOP_TOKEN} and more"
    transport = FakeTransport([
        partial_event("Hi"),
        partial_event(f"Hi there{STOP_TOKEN}"),
        partial_event(leaked),
        terminal_event([bot_message(leaked, suggestedResponses=[{"text": "x"}])]),
    ])
    assembler, chunks = _assembler(transport, threaded=True)

    reply = await assembler.run()

    assert assembler.stop_token_found
    assert chunks == ["Hi", f" there{STOP_TOKEN}"]
    assert reply.final_text == "Hi there"
    assert reply.message["text"] == "Hi there"
    assert reply.message["adaptiveCards"][0]["body"][0]["text"] == "Hi there"
    assert "suggestedResponses" not in reply.message


@pytest.mark.asyncio
async def test_threaded_offense_without_text_uses_placeholder():
    transport = FakeTransport([
        terminal_event([bot_message("I'd rather not", offense="OffenseTrigger")]),
    ])
    assembler, _ = _assembler(transport, threaded=True)

    reply = await assembler.run()

    assert reply.final_text == MODERATION_PLACEHOLDER


@pytest.mark.asyncio
async def test_threaded_apology_follow_up_keeps_partial_text():
    transport = FakeTransport([
        partial_event("Partial answer"),
        terminal_event([bot_message("Partial answer, then"), bot_message("Sorry", contentOrigin="Apology")]),
    ])
    assembler, _ = _assembler(transport, threaded=True)

    reply = await assembler.run()

    # 候选取最后一条，文本被替换为已收到的部分回复
    assert reply.final_text == "Partial answer"
    assert reply.message["contentOrigin"] == "Apology"


@pytest.mark.asyncio
async def test_result_error_with_partial_text_gives_partial_credit():
    transport = FakeTransport([
        partial_event("Half of"),
        terminal_event(
            [bot_message("Sorry, let's change the topic.")],
            result={"value": "Throttled", "message": "filtered", "error": "moderation"},
        ),
    ])
    assembler, _ = _assembler(transport)

    reply = await assembler.run()

    assert reply.final_text == "Half of"
    assert reply.message["adaptiveCards"][0]["body"][0]["text"] == "Half of"


@pytest.mark.asyncio
async def test_result_error_without_text_fails():
    transport = FakeTransport([
        terminal_event(
            [bot_message("nope")],
            result={"value": "Throttled", "message": "too many", "error": "throttled"},
        ),
    ])
    assembler, _ = _assembler(transport)

    with pytest.raises(ModerationError) as exc:
        await assembler.run()
    assert exc.value.code == "Throttled"
    assert exc.value.message == "Throttled: too many"
    assert assembler.state is AssemblerState.FAILED
    assert transport.closed


@pytest.mark.asyncio
async def test_invalid_session():
    transport = FakeTransport([
        partial_event("text"),
        terminal_event([], result={"value": "InvalidSession", "message": "expired"}),
    ])
    assembler, _ = _assembler(transport)

    with pytest.raises(SessionInvalidError) as exc:
        await assembler.run()
    assert exc.value.code == "InvalidSession"


@pytest.mark.asyncio
async def test_terminal_without_messages():
    assembler, _ = _assembler(FakeTransport([terminal_event([])]))

    with pytest.raises(ProtocolError) as exc:
        await assembler.run()
    assert exc.value.code == "NO_MESSAGE"


@pytest.mark.asyncio
async def test_terminal_with_unexpected_author():
    assembler, _ = _assembler(FakeTransport([terminal_event([{"author": "user", "text": "hi"}])]))

    with pytest.raises(ProtocolError) as exc:
        await assembler.run()
    assert exc.value.code == "UNEXPECTED_AUTHOR"


@pytest.mark.asyncio
async def test_close_with_error_event():
    transport = FakeTransport([{"type": 7, "error": "Connection closed with an error.", "allowReconnect": True}])
    assembler, _ = _assembler(transport)

    with pytest.raises(TransportError) as exc:
        await assembler.run()
    assert exc.value.code == "CONNECTION_CLOSED_WITH_ERROR"
    assert transport.closed


@pytest.mark.asyncio
async def test_other_event_with_error():
    assembler, _ = _assembler(FakeTransport([{"type": 3, "error": "boom"}]))

    with pytest.raises(ProtocolError) as exc:
        await assembler.run()
    assert exc.value.message == "Event Type('3'): boom"


@pytest.mark.asyncio
async def test_transport_failure_propagates():
    transport = FakeTransport([
        partial_event("par"),
        TransportError(code="CONNECTION_CLOSED", message="gone"),
    ])
    assembler, chunks = _assembler(transport)

    with pytest.raises(TransportError):
        await assembler.run()
    assert chunks == ["par"]


@pytest.mark.asyncio
async def test_timeout():
    transport = FakeTransport([partial_event("still typing")])
    assembler, _ = _assembler(transport, timeout=0.05)

    with pytest.raises(TurnTimeoutError) as exc:
        await assembler.run()
    assert exc.value.code == "TURN_TIMEOUT"
    assert assembler.state is AssemblerState.FAILED
    assert transport.closed


@pytest.mark.asyncio
async def test_cancel_signal():
    cancel = asyncio.Event()
    transport = FakeTransport([partial_event("first words")])
    assembler, chunks = _assembler(transport, cancel_event=cancel)

    async def cancel_later():
        await asyncio.sleep(0.02)
        cancel.set()

    canceller = asyncio.create_task(cancel_later())
    with pytest.raises(TurnCancelledError) as exc:
        await assembler.run()
    await canceller

    assert exc.value.code == "REQUEST_ABORTED"
    assert exc.value.message == "Request aborted"
    assert chunks == ["first words"]
    assert transport.closed


@pytest.mark.asyncio
async def test_cancel_after_resolution_is_ignored():
    cancel = asyncio.Event()
    transport = FakeTransport([partial_event("done"), terminal_event([bot_message("done")])])
    assembler, _ = _assembler(transport, cancel_event=cancel)

    reply = await assembler.run()
    cancel.set()
    await asyncio.sleep(0)

    assert reply.final_text == "done"
    assert assembler.state is AssemblerState.RESOLVED


@pytest.mark.asyncio
async def test_image_generation_merges_refs():
    generator = FakeImageGenerator(refs=["https://img.test/1", "https://img.test/2"])
    transport = FakeTransport([
        partial_event("Here you go"),
        {"type": 1, "arguments": [{"messages": [_image_message()]}]},
        {"type": 1, "arguments": [{"messages": [_image_message()]}]},
        terminal_event([bot_message("Here you go"), _image_message()]),
    ])
    assembler, _ = _assembler(transport, image_generator=generator, image_gen_type="markdown_list")

    reply = await assembler.run()

    assert generator.calls == [("a cat", "img-1")]
    assert reply.final_text == "Here you go"
    card_text = reply.message["adaptiveCards"][0]["body"][0]["text"]
    assert card_text == "Here you go\n![1.a cat](https://img.test/1)\n![2.a cat](https://img.test/2)"
    assert reply.image_attachment.images == ["https://img.test/1", "https://img.test/2"]
    assert reply.message["bic"] == {
        "type": "markdown_list",
        "prompt": "a cat",
        "images": ["https://img.test/1", "https://img.test/2"],
    }


@pytest.mark.asyncio
async def test_image_generation_failure_is_appended():
    generator = FakeImageGenerator(fail_with=RuntimeError("quota exceeded"))
    transport = FakeTransport([
        partial_event("Drawing"),
        {"type": 1, "arguments": [{"messages": [_image_message()]}]},
        terminal_event([bot_message("Drawing"), _image_message()]),
    ])
    assembler, chunks = _assembler(transport, image_generator=generator)

    reply = await assembler.run()

    assert reply.final_text == "Drawing\nquota exceeded"
    assert reply.image_attachment.is_error
    assert reply.message["bic"]["isError"] is True
    assert "quota exceeded" in chunks


@pytest.mark.asyncio
async def test_image_event_without_generator_is_ignored():
    transport = FakeTransport([
        {"type": 1, "arguments": [{"messages": [_image_message()]}]},
        terminal_event([bot_message("text only")]),
    ])
    assembler, _ = _assembler(transport)

    reply = await assembler.run()

    assert reply.final_text == "text only"
    assert reply.image_attachment is None


def test_format_image_refs():
    refs = ["u1", "u2"]
    assert format_image_refs(refs, "url_list", "p") == "1.u1\n2.u2"
    assert format_image_refs(refs, "markdown_list", "p") == "![1.p](u1)\n![2.p](u2)"
    assert format_image_refs(["<iframe/>"], "iframe", "p") == "<iframe/>"


async def _open_transport(fake_server, script):
    fake_server.scripts.append(script)
    transport = TransportSession(SettingsStub())
    await transport.open("sig")
    await transport.send({"type": 4, "arguments": []})
    return transport


@pytest.mark.asyncio
async def test_terminal_over_socket_closes_once(fake_server):
    transport = await _open_transport(fake_server, [partial_event("x"), terminal_event([bot_message("x")])])
    assembler = StreamAssembler(transport, timeout=1.0)

    reply = await assembler.run()

    assert reply.final_text == "x"
    assert fake_server.last.close_calls == 1
    assert transport._keepalive_task.done()


@pytest.mark.asyncio
async def test_cancel_racing_queued_terminal_has_single_outcome(fake_server):
    transport = await _open_transport(fake_server, [partial_event("x"), terminal_event([bot_message("x")])])
    cancel = asyncio.Event()
    cancel.set()
    assembler = StreamAssembler(transport, timeout=1.0, cancel_event=cancel)

    with pytest.raises(TurnCancelledError):
        await assembler.run()
    # 输掉的一方已被撤销，不会再有迟到的结果或第二次拆除
    await asyncio.sleep(0.02)

    assert assembler.state is AssemblerState.FAILED
    assert fake_server.last.close_calls == 1
    assert transport.closed
    assert transport._keepalive_task.done()
