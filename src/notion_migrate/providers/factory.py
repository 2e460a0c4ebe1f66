"""Provider selection, resolved once at startup."""

from typing import Optional

from ..api.client import HTTPClient
from ..api.exceptions import ValidationError
from ..config.config import (
    AIConfig,
    AIProviderKind,
    Config,
    ImageProviderKind,
    StorageConfig,
    StorageKind,
)
from .ai import ChatCompletionProvider, DeepSeekProvider, OpenAIProvider
from .base import AIProvider, Collaborators, ImageProvider, ObjectStore
from .image import DashScopeImageProvider
from .notion import NotionContentSource, NotionDestination, notion_client
from .storage import LocalObjectStore, S3ObjectStore, create_s3_client

AI_PROVIDERS = {
    AIProviderKind.DEEPSEEK: DeepSeekProvider,
    AIProviderKind.OPENAI: OpenAIProvider,
}


class ProviderFactory:
    """Factory for creating collaborators from configuration."""

    @staticmethod
    def create_ai_provider(config: AIConfig) -> AIProvider:
        """Create the configured text provider.

        Raises:
            ValidationError: If no API key is configured
        """
        if not config.api_key:
            raise ValidationError(f'ai.api_key is required for {config.provider.value}')

        provider_class = AI_PROVIDERS[config.provider]
        client = HTTPClient(
            config.base_url or provider_class.BASE_URL,
            headers={'Authorization': f'Bearer {config.api_key}'},
            timeout=config.timeout,
        )
        return provider_class(client, model=provider_class.resolve_model(config.model))

    @staticmethod
    def create_image_provider(config: AIConfig) -> ImageProvider:
        """Create the configured image provider.

        Raises:
            ValidationError: If no image API key is configured
        """
        if not config.image_api_key:
            raise ValidationError('ai.image_api_key is required for image generation')

        if config.image_provider == ImageProviderKind.DASHSCOPE:
            client = HTTPClient(
                DashScopeImageProvider.BASE_URL,
                headers={'Authorization': f'Bearer {config.image_api_key}'},
                timeout=config.timeout,
            )
            return DashScopeImageProvider(
                client, model=config.image_model, size=config.image_size
            )
        raise ValidationError(f'Unsupported image provider: {config.image_provider}')

    @staticmethod
    def create_object_store(config: StorageConfig) -> ObjectStore:
        if config.kind == StorageKind.S3:
            return S3ObjectStore(
                config.bucket,
                create_s3_client(config),
                region=config.region,
                public_base_url=config.public_base_url,
            )
        return LocalObjectStore(config.local_dir, config.public_base_url)

    @classmethod
    def create_collaborators(cls, config: Config) -> Collaborators:
        """Create every collaborator the enabled features need."""
        client = notion_client(config.notion)
        ai: Optional[ChatCompletionProvider] = None
        images: Optional[ImageProvider] = None
        storage: Optional[ObjectStore] = None

        if config.migration.generate_summaries:
            ai = cls.create_ai_provider(config.ai)
        if config.migration.generate_images:
            images = cls.create_image_provider(config.ai)
            storage = cls.create_object_store(config.storage)

        return Collaborators(
            source=NotionContentSource(config.notion, client),
            destination=NotionDestination(config.notion, client),
            ai=ai,
            images=images,
            storage=storage,
        )
