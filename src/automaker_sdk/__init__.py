"""Automaker SDK: multi-provider coding-agent orchestration, pipelines and merge gates."""

from automaker_sdk.__version__ import __version__

from automaker_sdk.core.cancellation import CancellationToken
from automaker_sdk.core.config import AutomakerConfig
from automaker_sdk.core.constants import (
    BlockType,
    ErrorType,
    MessageSubtype,
    MessageType,
    ProviderFeature,
    ProviderName,
)
from automaker_sdk.core.events import EventEmitter, NullEmitter, RecordingEmitter
from automaker_sdk.core.exceptions import (
    AbortedError,
    AuthenticationError,
    AutoModeError,
    AutomakerError,
    BackendProtocolError,
    CircularDependencyError,
    ConfigurationError,
    MalformedOutputError,
    MergeError,
    OutputParsingError,
    PipelineError,
    PipelineValidationError,
    ProviderConfigError,
    ProviderError,
    QuotaExhaustedError,
    RateLimitError,
    RepositoryNotAllowedError,
    ReviewError,
    SpawnError,
    StorageError,
)
from automaker_sdk.core.types import (
    ContentBlock,
    ConversationMessage,
    ExecuteOptions,
    InstallationStatus,
    ModelDefinition,
    OutputFormat,
    ProviderConfig,
    ProviderMessage,
    ValidationResult,
)
from automaker_sdk.providers.base import BaseProvider
from automaker_sdk.providers.claude import ClaudeProvider
from automaker_sdk.providers.codex import CodexProvider
from automaker_sdk.providers.cursor import CursorProvider
from automaker_sdk.providers.custom import CustomEndpoint, CustomProvider
from automaker_sdk.providers.factory import ProviderFactory
from automaker_sdk.providers.opencode import OpenCodeProvider
from automaker_sdk.output.structured import StructuredOutput, extract_json, validate_against_schema
from automaker_sdk.query.provider_query import (
    ProviderQueryOptions,
    QueryAccumulator,
    execute_provider_query,
    query_structured,
)
from automaker_sdk.pipeline.config_service import PipelineConfigService
from automaker_sdk.pipeline.executor import PipelineStepExecutor
from automaker_sdk.pipeline.memory import PipelineMemory
from automaker_sdk.pipeline.models import (
    Feature,
    PipelineConfig,
    PipelineStepConfig,
    PipelineStepResult,
    StepStatus,
)
from automaker_sdk.pipeline.storage import PipelineStorage
from automaker_sdk.autonomous import AutoModeService, FailureTracker
from automaker_sdk.merge import ALLOWED_REPOSITORY, MergeGatekeeper
from automaker_sdk.review import CodeReviewService

__all__ = [
    "__version__",
    "ALLOWED_REPOSITORY",
    "AbortedError",
    "AuthenticationError",
    "AutoModeError",
    "AutoModeService",
    "AutomakerConfig",
    "AutomakerError",
    "BackendProtocolError",
    "BaseProvider",
    "BlockType",
    "CancellationToken",
    "CircularDependencyError",
    "ClaudeProvider",
    "CodeReviewService",
    "CodexProvider",
    "ConfigurationError",
    "ContentBlock",
    "ConversationMessage",
    "CursorProvider",
    "CustomEndpoint",
    "CustomProvider",
    "ErrorType",
    "EventEmitter",
    "ExecuteOptions",
    "FailureTracker",
    "Feature",
    "InstallationStatus",
    "MalformedOutputError",
    "MergeError",
    "MergeGatekeeper",
    "MessageSubtype",
    "MessageType",
    "ModelDefinition",
    "NullEmitter",
    "OpenCodeProvider",
    "OutputFormat",
    "OutputParsingError",
    "PipelineConfig",
    "PipelineConfigService",
    "PipelineError",
    "PipelineMemory",
    "PipelineStepConfig",
    "PipelineStepExecutor",
    "PipelineStepResult",
    "PipelineStorage",
    "PipelineValidationError",
    "ProviderConfig",
    "ProviderConfigError",
    "ProviderError",
    "ProviderFactory",
    "ProviderFeature",
    "ProviderMessage",
    "ProviderName",
    "ProviderQueryOptions",
    "QueryAccumulator",
    "QuotaExhaustedError",
    "RateLimitError",
    "RecordingEmitter",
    "RepositoryNotAllowedError",
    "ReviewError",
    "SpawnError",
    "StepStatus",
    "StorageError",
    "StructuredOutput",
    "ValidationResult",
    "execute_provider_query",
    "extract_json",
    "query_structured",
    "validate_against_schema",
]
