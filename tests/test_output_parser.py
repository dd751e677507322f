from __future__ import annotations

import json

from app.orchestration.output_parser import NO_TEXT_REPLY, clean_output, parse_agent_output

from tests.fakes import make_agent

AGENT = make_agent("Writer", model="anthropic/claude-sonnet-4-6")


def test_payload_documents_join_texts_and_read_usage() -> None:
    output = json.dumps(
        {
            "payloads": [{"text": "first"}, {"image": "x"}, {"text": "second"}],
            "meta": {
                "agentMeta": {
                    "provider": "anthropic",
                    "model": "claude-opus-4-6",
                    "lastCallUsage": {"total": 42},
                }
            },
        }
    )

    result = parse_agent_output(output, 1500, AGENT)

    assert result.success
    assert result.reply == "first\n\nsecond"
    assert result.model == "anthropic/claude-opus-4-6"
    assert result.tokens_used == 42
    assert result.duration_ms == 1500


def test_payloads_without_text_still_succeed() -> None:
    result = parse_agent_output('{"payloads": []}', 10, AGENT)

    assert result.success
    assert result.reply == NO_TEXT_REPLY
    assert result.model == AGENT.model


def test_alternate_reply_fields() -> None:
    result = parse_agent_output('{"content": "hello", "usage": {"total_tokens": 7}}', 10, AGENT)

    assert result.success
    assert result.reply == "hello"
    assert result.tokens_used == 7


def test_error_documents_become_failures() -> None:
    nested = parse_agent_output('{"error": {"message": "rate limited"}}', 10, AGENT)
    plain = parse_agent_output('{"error": "boom"}', 10, AGENT)

    assert not nested.success and nested.error == "rate limited"
    assert not plain.success and plain.error == "boom"


def test_non_json_output_is_a_raw_reply() -> None:
    result = parse_agent_output("just some text", 10, AGENT)

    assert result.success
    assert result.reply == "just some text"


def test_empty_output_fails() -> None:
    result = parse_agent_output("", 10, AGENT)

    assert not result.success
    assert result.error == "Empty response from agent"


def test_clean_output_strips_stream_framing() -> None:
    framed = '\x01\x00\x00\x00\x00\x00\x00\x1a{"text": "hi"}\n'

    assert clean_output(framed) == '{"text": "hi"}'
    assert clean_output("\x02\x00plain\x07") == "plain"
