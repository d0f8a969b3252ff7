"""Language-model invocation with function calling.

One AI turn is at most two chat-completion calls: the first may request
functions, which are executed locally and returned to the model in a second
call that produces the final reply. Token counts of both calls are summed so
the quota tracker sees the real cost of the turn.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence

import openai
from openai import OpenAI

from ..agents.providers import ProviderRegistry
from ..conversations.models import ChatTurn
from ..retry import Attempt, RetryPolicy
from ..settings import Settings
from .functions import (
    TRANSFER_TO_HUMAN,
    ActionExecutor,
    FileToSend,
    FunctionContext,
    UnknownAction,
    parse_action,
    tool_specs,
)

logger = logging.getLogger(__name__)

_RETRYABLE_ERRORS = (
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
)

SUMMARY_PROMPT = (
    "Resuma a conversa abaixo entre um cliente e o atendimento em no máximo 3 frases, "
    "em português. Mantenha produtos de interesse, pedidos, preferências e pendências. "
    "Não invente informações."
)

MIN_TURNS_TO_SUMMARIZE = 2


class AIInvocationError(RuntimeError):
    """Raised when the provider keeps failing after all retries."""


@dataclass
class AIResult:
    response: str
    input_tokens: int = 0
    output_tokens: int = 0
    functions_called: List[str] = field(default_factory=list)
    was_transferred: bool = False
    file_to_send: FileToSend | None = None
    model: str | None = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


def _usage_of(completion: Any) -> tuple[int, int]:
    usage = getattr(completion, "usage", None)
    if usage is None:
        return 0, 0
    return int(getattr(usage, "prompt_tokens", 0) or 0), int(getattr(usage, "completion_tokens", 0) or 0)


def _first_message(completion: Any) -> Any:
    choices = getattr(completion, "choices", None) or []
    if not choices:
        return None
    return getattr(choices[0], "message", None)


class AIInvocationAdapter:
    """Wrap an ``openai.OpenAI`` client for chat replies, summaries and speech."""

    def __init__(
        self,
        client: OpenAI,
        executor: ActionExecutor,
        *,
        model: str = "gpt-4o-mini",
        summary_model: str | None = None,
        max_tokens: int = 350,
        temperature: float = 0.4,
        retry: RetryPolicy | None = None,
    ) -> None:
        self._client = client
        self._executor = executor
        self.model = model
        self.summary_model = summary_model or model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._retry = retry or RetryPolicy()

    def _call(self, label: str, request: Callable[[], Any]) -> Any:
        def attempt() -> Attempt[Any]:
            try:
                return Attempt.success(request())
            except _RETRYABLE_ERRORS as exc:
                return Attempt.failure(f"{type(exc).__name__}: {exc}", retryable=True)
            except openai.OpenAIError as exc:
                return Attempt.failure(f"{type(exc).__name__}: {exc}", retryable=False)

        outcome = self._retry.run(attempt, label=label)
        if not outcome.ok:
            raise AIInvocationError(outcome.error or f"{label} failed")
        return outcome.value

    def _complete(self, messages: List[dict], tools: List[dict] | None, label: str) -> Any:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        return self._call(label, lambda: self._client.chat.completions.create(**kwargs))

    def generate_ai_response_with_functions(
        self,
        system_prompt: str,
        conversation_context: Sequence[ChatTurn],
        available_functions: Sequence[str],
        function_context: FunctionContext,
    ) -> AIResult:
        """Produce one reply, executing any functions the model asks for.

        Raises :class:`AIInvocationError` only when the provider is unreachable
        after retries; malformed completions yield an empty reply.
        """

        messages: List[dict] = [{"role": "system", "content": system_prompt}]
        messages.extend(turn.as_openai() for turn in conversation_context)
        tools = tool_specs(available_functions)

        first = self._complete(messages, tools, "chat completion")
        input_tokens, output_tokens = _usage_of(first)
        message = _first_message(first)
        if message is None:
            logger.warning("Chat completion returned no choices")
            return AIResult(response="", input_tokens=input_tokens, output_tokens=output_tokens, model=self.model)

        tool_calls = list(getattr(message, "tool_calls", None) or [])
        if not tool_calls:
            return AIResult(
                response=(getattr(message, "content", None) or "").strip(),
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                model=self.model,
            )

        functions_called: List[str] = []
        file_to_send: FileToSend | None = None
        was_transferred = False
        messages.append(
            {
                "role": "assistant",
                "content": getattr(message, "content", None),
                "tool_calls": [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.function.name, "arguments": call.function.arguments or "{}"},
                    }
                    for call in tool_calls
                ],
            }
        )
        for call in tool_calls:
            action = parse_action(call.function.name, call.function.arguments, available_functions)
            result = self._executor.execute(action, function_context)
            if not isinstance(action, UnknownAction):
                functions_called.append(action.name)
                logger.info("Function %s executed (success=%s)", action.name, result.success)
            if result.file_to_send is not None and file_to_send is None:
                file_to_send = result.file_to_send
            was_transferred = was_transferred or result.transferred
            messages.append({"role": "tool", "tool_call_id": call.id, "content": result.for_model()})

        second = self._complete(messages, None, "chat completion (function results)")
        extra_in, extra_out = _usage_of(second)
        final = _first_message(second)
        return AIResult(
            response=((getattr(final, "content", None) or "") if final is not None else "").strip(),
            input_tokens=input_tokens + extra_in,
            output_tokens=output_tokens + extra_out,
            functions_called=functions_called,
            was_transferred=was_transferred or TRANSFER_TO_HUMAN in functions_called,
            file_to_send=file_to_send,
            model=self.model,
        )

    def summarize_conversation(self, turns: Sequence[ChatTurn]) -> Optional[str]:
        """Short summary of ``turns``; ``None`` when there is too little to say or on failure."""

        if len(turns) < MIN_TURNS_TO_SUMMARIZE:
            return None
        transcript = "\n".join(
            f"{'Cliente' if turn.role == 'user' else 'Atendente'}: {turn.content}" for turn in turns
        )
        try:
            completion = self._call(
                "conversation summary",
                lambda: self._client.chat.completions.create(
                    model=self.summary_model,
                    messages=[
                        {"role": "system", "content": SUMMARY_PROMPT},
                        {"role": "user", "content": transcript},
                    ],
                    max_tokens=200,
                    temperature=0.2,
                ),
            )
        except AIInvocationError:
            logger.warning("Conversation summary unavailable", exc_info=True)
            return None
        message = _first_message(completion)
        summary = (getattr(message, "content", None) or "").strip() if message is not None else ""
        return summary or None

    def generate_speech(self, text: str, voice: str = "nova") -> Optional[bytes]:
        """Synthesize ``text`` as speech; ``None`` when synthesis fails."""

        if not text.strip():
            return None
        try:
            response = self._call(
                "speech synthesis",
                lambda: self._client.audio.speech.create(model="tts-1", voice=voice, input=text),
            )
        except AIInvocationError:
            logger.warning("Speech synthesis failed", exc_info=True)
            return None
        content = getattr(response, "content", None)
        if content is None and hasattr(response, "read"):
            content = response.read()
        return content or None


def build_openai_client(settings: Settings, registry: ProviderRegistry | None = None) -> OpenAI:
    credentials = (registry or ProviderRegistry()).get_credentials("openai")
    if not credentials.is_configured:
        raise RuntimeError("OPENAI_API_KEY is not configured")
    # Retries are handled by RetryPolicy so the SDK's own retry loop is disabled.
    return OpenAI(timeout=settings.openai_timeout, max_retries=0, **credentials.client_kwargs())


def build_ai_adapter(
    settings: Settings,
    executor: ActionExecutor,
    *,
    client: OpenAI | None = None,
    registry: ProviderRegistry | None = None,
) -> AIInvocationAdapter:
    return AIInvocationAdapter(
        client or build_openai_client(settings, registry),
        executor,
        model=settings.openai_model,
        summary_model=settings.openai_summary_model,
        max_tokens=settings.ai_max_tokens,
        temperature=settings.ai_temperature,
        retry=RetryPolicy(max_attempts=settings.ai_max_attempts),
    )
