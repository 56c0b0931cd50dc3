"""Provider-agnostic query execution.

Selects an adapter for a use-case model, adds prompt-level structured output
for adapters without native schema support, and re-emits the adapter stream
unchanged.
"""

from __future__ import annotations

from typing import Any, AsyncIterator, Type, TypeVar

import structlog
from pydantic import BaseModel, Field

from automaker_sdk.core.cancellation import CancellationToken
from automaker_sdk.core.config import AutomakerConfig
from automaker_sdk.core.constants import BlockType, MessageType, ProviderFeature
from automaker_sdk.core.exceptions import OutputParsingError
from automaker_sdk.core.types import (
    ExecuteOptions,
    OutputFormat,
    ProviderConfig,
    ProviderMessage,
)
from automaker_sdk.output.structured import (
    StructuredOutput,
    build_structured_output_prompt,
    finalize_structured_output,
)
from automaker_sdk.providers.factory import ProviderFactory
from automaker_sdk.query.model_resolver import (
    ModelUseCase,
    get_model_for_use_case,
    resolve_model_string,
    resolve_model_with_provider_availability,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T", bound=BaseModel)

DEFAULT_QUERY_MAX_TURNS = 100


class ProviderQueryOptions(BaseModel):
    model_config = {"arbitrary_types_allowed": True}

    cwd: str
    prompt: str
    model: str | None = None
    """Explicit model; when unset the use-case model is resolved from the environment."""
    use_case: ModelUseCase = "default"
    max_turns: int = DEFAULT_QUERY_MAX_TURNS
    allowed_tools: list[str] | None = None
    system_prompt: str | None = None
    cancellation: CancellationToken | None = None
    output_format: OutputFormat | None = None
    api_keys: dict[str, str] = Field(default_factory=dict)
    """Credentials keyed by provider name; merged over ``AutomakerConfig.api_keys``."""


class QueryAccumulator:
    """Forwards a provider stream while folding it into a summary.

    Usage::

        acc = QueryAccumulator()
        async for msg in acc.wrap(provider.execute_query(opts)):
            ...
        acc.text, acc.structured_output, acc.terminal
    """

    def __init__(self) -> None:
        self._parts: list[str] = []
        self.structured_output: Any = None
        self.terminal: ProviderMessage | None = None
        self.session_id: str | None = None

    @property
    def text(self) -> str:
        return "".join(self._parts)

    @property
    def succeeded(self) -> bool:
        return self.terminal is not None and self.terminal.type == MessageType.RESULT

    def feed(self, message: ProviderMessage) -> None:
        if message.session_id:
            self.session_id = message.session_id
        if message.type == MessageType.ASSISTANT and message.message is not None:
            for block in message.message.content:
                if block.type == BlockType.TEXT and block.text:
                    self._parts.append(block.text)
        if message.is_terminal and self.terminal is None:
            self.terminal = message
        if message.type == MessageType.RESULT and message.structured_output is not None:
            self.structured_output = message.structured_output

    async def wrap(
        self, stream: AsyncIterator[ProviderMessage]
    ) -> AsyncIterator[ProviderMessage]:
        async for message in stream:
            self.feed(message)
            yield message


def _resolve_model(options: ProviderQueryOptions, config: AutomakerConfig) -> str:
    if options.model:
        model = resolve_model_string(options.model)
    else:
        model = get_model_for_use_case(options.use_case)
    return resolve_model_with_provider_availability(model, config.enabled_providers)


async def execute_provider_query(
    options: ProviderQueryOptions,
    *,
    config: AutomakerConfig | None = None,
    factory: ProviderFactory | None = None,
) -> AsyncIterator[ProviderMessage]:
    """Run one query through whichever adapter serves the resolved model.

    Every adapter message is re-emitted unchanged.  When a schema was
    requested and the adapter did not produce ``structured_output`` itself,
    the accumulated text is extracted and validated; a synthesized success
    ``result`` carrying the value follows only when it validates.

    Exceptions raised by the adapter are logged, surfaced as one ``error``
    message, then re-raised.
    """
    config = config or AutomakerConfig.from_env()
    factory = factory or ProviderFactory()

    model = _resolve_model(options, config)
    provider_name = factory.detect_provider_name(model)
    api_key = options.api_keys.get(provider_name) or config.api_keys.get(provider_name)
    provider = factory.get_provider_for_model(
        model, ProviderConfig(api_key=api_key) if api_key else None
    )
    native = provider.supports_feature(ProviderFeature.STRUCTURED_OUTPUT)
    logger.info(
        "provider_query_start",
        model=model,
        provider=provider.get_name(),
        use_case=options.use_case,
        structured=options.output_format is not None,
    )

    prompt = options.prompt
    if options.output_format is not None and not native:
        prompt = build_structured_output_prompt(prompt, options.output_format.json_schema)
        logger.debug("structured_output_prompt_added", provider=provider.get_name())

    execute_options = ExecuteOptions(
        prompt=prompt,
        model=model,
        cwd=options.cwd,
        system_prompt=options.system_prompt,
        max_turns=options.max_turns,
        allowed_tools=options.allowed_tools,
        cancellation=options.cancellation,
        output_format=options.output_format if native else None,
    )

    acc = QueryAccumulator()
    try:
        async for message in acc.wrap(provider.execute_query(execute_options)):
            yield message
    except Exception as exc:
        logger.error("provider_query_failed", model=model, error=str(exc))
        yield ProviderMessage.failure(str(exc))
        raise

    if (
        options.output_format is not None
        and acc.structured_output is None
        and acc.succeeded
    ):
        value = finalize_structured_output(acc.text, options.output_format.json_schema)
        if value is not None:
            logger.info("structured_output_parsed", provider=provider.get_name())
            yield ProviderMessage.success(
                acc.text, acc.session_id, structured_output=value
            )

    logger.info("provider_query_complete", model=model, response_length=len(acc.text))


async def query_structured(
    options: ProviderQueryOptions,
    output_model: Type[T],
    *,
    max_retries: int = 2,
    config: AutomakerConfig | None = None,
    factory: ProviderFactory | None = None,
) -> T:
    """Run *options* with *output_model*'s schema and return a validated instance.

    Retries up to *max_retries* additional times when the reply cannot be
    parsed.

    Raises:
        OutputParsingError: After all attempts are exhausted.
    """
    request = options.model_copy(
        update={"output_format": OutputFormat(schema=StructuredOutput.schema_for(output_model))}
    )
    last_error: OutputParsingError | None = None

    for attempt in range(max_retries + 1):
        acc = QueryAccumulator()
        async for _ in acc.wrap(execute_provider_query(request, config=config, factory=factory)):
            pass
        if acc.terminal is not None and acc.terminal.type == MessageType.ERROR:
            last_error = OutputParsingError(
                f"Query failed: {acc.terminal.error}",
                details={"error_type": str(acc.terminal.error_type)},
            )
        else:
            try:
                return StructuredOutput.parse(
                    acc.structured_output if acc.structured_output is not None else acc.text,
                    output_model,
                )
            except OutputParsingError as exc:
                last_error = exc
        logger.warning("structured_query_retry", attempt=attempt + 1, error=str(last_error))

    raise last_error or OutputParsingError("All retries exhausted")
