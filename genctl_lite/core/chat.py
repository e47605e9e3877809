"""
Chat completion through the model's chat template.
"""

import dataclasses
from typing import Generator, List, NamedTuple, Optional, Sequence, Union

from genctl_lite.core.completion import (
    CompletionParams,
    CompletionResult,
    generate,
    generate_stream,
)
from genctl_lite.errors import InvalidArgumentError, UnsupportedOperationError, records_errors


class ChatMessage(NamedTuple):
    """One turn of a conversation."""
    role: str
    content: str


Message = Union[ChatMessage, dict]


@records_errors
def format_chat(
    model,
    messages: Sequence[Message],
    system: Optional[str] = None,
    add_assistant: bool = True,
    template: Optional[str] = None,
) -> str:
    """Render a conversation into a prompt with the model's chat template.

    Args:
        model: Model whose template is used.
        messages: Conversation turns, oldest first.
        system: Optional system prompt placed before the first turn.
        add_assistant: Open an assistant turn at the end.
        template: Template text overriding the model's own.

    Raises:
        InvalidArgumentError: If there are no messages or rendering fails.
        UnsupportedOperationError: If the model has no chat template and
            none was given.
    """
    if not messages:
        raise InvalidArgumentError("no chat messages provided")
    turns: List[Message] = []
    if system:
        turns.append(ChatMessage("system", system))
    turns.extend(messages)
    if template is None and not model.has_chat_template:
        raise UnsupportedOperationError(f"model {model.path} has no chat template")
    return model.apply_chat_template(turns, add_assistant=add_assistant, template=template)


def _chat_params(params: Optional[CompletionParams]) -> CompletionParams:
    # Templates emit special-token markup and their own BOS
    return dataclasses.replace(params or CompletionParams(), parse_special=True, add_special=False)


@records_errors
def chat(
    context,
    messages: Sequence[Message],
    params: Optional[CompletionParams] = None,
    system: Optional[str] = None,
    template: Optional[str] = None,
) -> CompletionResult:
    """Generate the assistant's reply to ``messages``.

    The rendered prompt is tokenized with special-token parsing on and
    without extra BOS/EOS tokens.
    """
    context.check_open()
    prompt = format_chat(context.model, messages, system=system, template=template)
    return generate(context, prompt, _chat_params(params))


def chat_stream(
    context,
    messages: Sequence[Message],
    params: Optional[CompletionParams] = None,
    system: Optional[str] = None,
    template: Optional[str] = None,
) -> Generator[str, None, CompletionResult]:
    """Streaming form of ``chat``; yields decoded pieces."""
    context.check_open()
    prompt = format_chat(context.model, messages, system=system, template=template)
    result = yield from generate_stream(context, prompt, _chat_params(params))
    return result
