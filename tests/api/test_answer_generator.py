"""Tests for AnswerGenerator and the prompt helpers."""

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from api.composer.generator import AnswerGenerator
from api.composer.prompts import NO_CONTEXT_RESPONSE, build_context, source_files
from api.llm.client import to_langchain_messages, to_role_messages
from api.models import Chunk
from libs.common.errors import LanguageModelError


@pytest.fixture
def chunks():
    return [
        Chunk(id="c1", zone="yucatan", source_file="lista_precios.pdf", page=3, text="Lote 12: $500,000 MXN"),
        Chunk(id="c2", zone="yucatan", source_file="brochure.pdf", page=1, text="Casa club con alberca"),
        Chunk(id="c3", zone="yucatan", source_file="lista_precios.pdf", page=4, text="Lote 13: $520,000 MXN"),
    ]


def test_build_context_numbers_sources(chunks):
    """Context numbers each chunk."""
    context = build_context(chunks)

    assert context.startswith("[Fuente 1: lista_precios.pdf, Página 3]\nLote 12: $500,000 MXN")
    assert "[Fuente 2: brochure.pdf, Página 1]" in context
    assert context.count("\n\n---\n\n") == 2


def test_source_files_are_distinct_in_order(chunks):
    """Source files are listed once in order."""
    assert source_files(chunks) == ["lista_precios.pdf", "brochure.pdf"]


@pytest.mark.asyncio
async def test_answer_without_chunks_skips_model(fake_llm):
    """No chunks gives the fixed answer without a model call."""
    generator = AnswerGenerator(fake_llm)

    assert await generator.answer("¿Precio del lote 12?", []) == NO_CONTEXT_RESPONSE
    assert fake_llm.calls == []


@pytest.mark.asyncio
async def test_answer_sends_numbered_context(fake_llm, chunks):
    """The model gets numbered context and configured limits."""
    generator = AnswerGenerator(fake_llm, temperature=0.1, max_tokens=500)

    draft = await generator.answer("¿Precio del lote 12?", chunks, zone="yucatan", development="Amura")

    assert draft == fake_llm.reply
    call = fake_llm.calls[0]
    assert call["temperature"] == 0.1
    assert call["max_tokens"] == 500
    assert [m["role"] for m in call["messages"]] == ["system", "user"]
    user_message = call["messages"][1]["content"]
    assert "Pregunta: ¿Precio del lote 12?" in user_message
    assert "Desarrollo: Amura" in user_message
    assert "[Fuente 3: lista_precios.pdf, Página 4]" in user_message


@pytest.mark.asyncio
async def test_answer_simple_uses_short_reply_settings(fake_llm):
    """Simple replies use a warmer, shorter setting."""
    await AnswerGenerator(fake_llm).answer_simple("hola")

    call = fake_llm.calls[0]
    assert call["temperature"] == 0.7
    assert call["max_tokens"] == 150
    assert call["messages"][-1] == {"role": "user", "content": "hola"}


@pytest.mark.asyncio
async def test_model_failure_propagates(failing_llm, chunks):
    """Model failures are not swallowed."""
    with pytest.raises(LanguageModelError):
        await AnswerGenerator(failing_llm).answer("¿Precio del lote 12?", chunks)


def test_message_conversion():
    """Role dicts convert to LangChain messages and back."""
    messages = [
        {"role": "system", "content": "Eres un asistente"},
        {"role": "user", "content": "hola"},
        {"role": "assistant", "content": "¡Hola!"},
    ]

    converted = to_langchain_messages(messages)

    assert [type(m) for m in converted] == [SystemMessage, HumanMessage, AIMessage]
    assert to_role_messages(converted) == messages


def test_unknown_role_is_rejected():
    """An unknown role raises ValueError."""
    with pytest.raises(ValueError):
        to_langchain_messages([{"role": "tool", "content": "x"}])
