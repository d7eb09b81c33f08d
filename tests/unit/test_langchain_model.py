from langchain_core.language_models.fake_chat_models import GenericFakeChatModel
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage

from advisor_pipeline.config import ChatOptions
from advisor_pipeline.model.langchain_model import (
    LangChainChatModel,
    message_text,
    to_langchain_messages,
)
from advisor_pipeline.types import Message, ToolCallIntent, Usage


def _model(*replies: AIMessage) -> LangChainChatModel:
    return LangChainChatModel(GenericFakeChatModel(messages=iter(replies)))


async def test_invoke_maps_content_and_usage() -> None:
    reply = AIMessage(
        content="New Delhi",
        usage_metadata={"input_tokens": 12, "output_tokens": 3, "total_tokens": 15},
    )

    result = await _model(reply).invoke([Message.user("capital of India?")], ChatOptions())

    assert result.content == "New Delhi"
    assert result.usage == Usage(prompt_tokens=12, completion_tokens=3, total_tokens=15)
    assert result.tool_call_intents == ()


async def test_invoke_maps_tool_calls_to_intents() -> None:
    reply = AIMessage(
        content="",
        tool_calls=[{"name": "createTicket", "args": {"issue": "VPN down"}, "id": "call_9"}],
    )

    result = await _model(reply).invoke([Message.user("open a ticket")], ChatOptions())

    assert result.tool_call_intents == (
        ToolCallIntent(id="call_9", name="createTicket", arguments={"issue": "VPN down"}),
    )
    assert result.usage is None


async def test_stream_yields_deltas_then_terminal_chunk() -> None:
    chunks = [
        chunk
        async for chunk in _model(AIMessage(content="hello streaming world")).stream(
            [Message.user("hi")], ChatOptions()
        )
    ]

    assert "".join(chunk.content for chunk in chunks) == "hello streaming world"
    assert chunks[-1].finished
    assert not any(chunk.finished for chunk in chunks[:-1])


def test_message_conversion_keeps_tool_round_trip() -> None:
    intent = ToolCallIntent(id="call_1", name="echo", arguments={"text": "x"})

    converted = to_langchain_messages(
        [
            Message.system("rules"),
            Message.user("hi"),
            Message.assistant("", tool_calls=(intent,)),
            Message.tool("X", tool_call_id="call_1", name="echo"),
        ]
    )

    assert [type(message) for message in converted] == [
        SystemMessage,
        HumanMessage,
        AIMessage,
        ToolMessage,
    ]
    assert converted[2].tool_calls[0]["id"] == "call_1"
    assert converted[3].tool_call_id == "call_1"


def test_message_text_flattens_content_blocks() -> None:
    assert message_text([{"type": "text", "text": "a"}, {"type": "image"}, "b"]) == "ab"
