"""Configuration management for the Notion migration tool."""

from enum import Enum
from typing import Any, Dict, List, Optional
from pathlib import Path
import os

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)
import yaml
from dotenv import load_dotenv


ENRICHMENT_STEPS = ('summary', 'title', 'keywords')


class AIProviderKind(str, Enum):
    """Supported text generation providers."""

    DEEPSEEK = 'deepseek'
    OPENAI = 'openai'


class ImageProviderKind(str, Enum):
    """Supported image generation providers."""

    DASHSCOPE = 'dashscope'


class StorageKind(str, Enum):
    """Supported object stores."""

    LOCAL = 'local'
    S3 = 's3'


class NotionConfig(BaseModel):
    """Source pages and destination database on Notion."""

    token: str = Field(..., description='Notion integration token')
    root_page_id: str = Field(..., description='Page whose children are migrated')
    database_id: str = Field(..., description='Destination database id')
    categories_database_id: Optional[str] = Field(
        default=None,
        description='Database holding categories. Defaults to database_id.',
    )
    base_url: str = Field(
        default='https://api.notion.com/v1', description='Notion API root'
    )
    notion_version: str = Field(default='2022-06-28', description='API version header')
    timeout: int = Field(default=30, description='Request timeout in seconds')

    @field_validator('base_url')
    @classmethod
    def validate_url(cls, v):
        """Validate URL format."""
        if not v.startswith(('http://', 'https://')):
            raise ValueError('URL must start with http:// or https://')
        return v.rstrip('/')

    @field_validator('token', 'root_page_id', 'database_id')
    @classmethod
    def validate_not_blank(cls, v):
        """Reject blank identifiers."""
        if not v or not v.strip():
            raise ValueError('Value must not be empty')
        return v.strip()


class AIConfig(BaseModel):
    """Text and image generation providers."""

    provider: AIProviderKind = Field(
        default=AIProviderKind.DEEPSEEK, description='Text provider'
    )
    api_key: Optional[str] = Field(default=None, description='Text provider key')
    model: Optional[str] = Field(default=None, description='Model name override')
    base_url: Optional[str] = Field(default=None, description='API root override')

    image_provider: ImageProviderKind = Field(
        default=ImageProviderKind.DASHSCOPE, description='Image provider'
    )
    image_api_key: Optional[str] = Field(default=None, description='Image provider key')
    image_model: str = Field(default='wanx2.1-t2i-turbo', description='Image model')
    image_size: str = Field(default='1024*1024', description='Image size WxH')
    timeout: int = Field(default=60, description='Request timeout in seconds')

    @field_validator('image_size')
    @classmethod
    def validate_image_size(cls, v):
        """Validate size is WIDTH*HEIGHT."""
        parts = v.split('*')
        if len(parts) != 2 or not all(part.isdigit() for part in parts):
            raise ValueError('image_size must look like 1024*1024')
        return v


class StorageConfig(BaseModel):
    """Object storage for generated assets."""

    kind: StorageKind = Field(default=StorageKind.LOCAL, description='Store type')
    local_dir: str = Field(default='assets', description='Directory for local store')
    bucket: Optional[str] = Field(default=None, description='S3 bucket')
    region: Optional[str] = Field(default=None, description='S3 region')
    profile: Optional[str] = Field(default=None, description='AWS profile name')
    prefix: str = Field(default='images', description='Key prefix for assets')
    public_base_url: Optional[str] = Field(
        default=None, description='Base of returned public URLs'
    )

    @model_validator(mode='after')
    def validate_bucket(self):
        """S3 storage needs a bucket."""
        if self.kind == StorageKind.S3 and not self.bucket:
            raise ValueError('bucket is required for s3 storage')
        return self


class RateLimitConfig(BaseModel):
    """Requests per second for each service class."""

    content_source: float = Field(default=3.0, description='Notion reads')
    destination: float = Field(default=3.0, description='Notion writes')
    ai_provider: float = Field(default=1.0, description='AI requests')
    object_storage: float = Field(default=10.0, description='Asset uploads')
    burst: float = Field(default=1.0, description='Bucket capacity')

    @field_validator('content_source', 'destination', 'ai_provider', 'object_storage')
    @classmethod
    def validate_rate_limit(cls, v):
        """Validate rate limit is positive."""
        if v <= 0:
            raise ValueError('Rate limit must be positive')
        return v

    @field_validator('burst')
    @classmethod
    def validate_burst(cls, v):
        if v < 1:
            raise ValueError('Burst must be at least 1')
        return v


class RetryConfig(BaseModel):
    """Stage retry behaviour."""

    max_attempts: int = Field(default=3, description='Attempt ceiling per entry')
    base_delay: float = Field(default=1.0, description='First retry delay (s)')
    max_delay: float = Field(default=60.0, description='Transient delay cap (s)')
    jitter: float = Field(default=0.25, description='Random fraction added')
    rate_limit_multiplier: float = Field(
        default=4.0, description='Rate-limited delay factor'
    )

    @field_validator('max_attempts')
    @classmethod
    def validate_max_attempts(cls, v):
        if v < 1:
            raise ValueError('max_attempts must be at least 1')
        return v

    @field_validator('rate_limit_multiplier')
    @classmethod
    def validate_multiplier(cls, v, info: ValidationInfo):
        """Rate-limited backoff must outlast transient backoff."""
        if v <= 1 + info.data.get('jitter', 0):
            raise ValueError('rate_limit_multiplier must exceed 1 + jitter')
        return v


class PollerConfig(BaseModel):
    """Remote generation job polling."""

    interval: float = Field(default=5.0, description='Seconds between checks')
    max_attempts: int = Field(default=15, description='Checks before timing out')

    @field_validator('interval')
    @classmethod
    def validate_interval(cls, v):
        if v < 0:
            raise ValueError('interval must not be negative')
        return v

    @field_validator('max_attempts')
    @classmethod
    def validate_max_attempts(cls, v):
        if v < 1:
            raise ValueError('max_attempts must be at least 1')
        return v


class MigrationConfig(BaseModel):
    """Migration-specific configuration."""

    state_file: str = Field(
        default='migration-state.json', description='Progress ledger path'
    )
    batch_size: int = Field(default=10, description='Entries per window')
    max_workers: int = Field(default=3, description='Concurrent pipelines')
    batch_delay_ms: int = Field(default=1000, description='Pause between windows')

    generate_summaries: bool = Field(default=True, description='Run enrichment')
    generate_images: bool = Field(default=True, description='Generate images')
    required_enrichments: List[str] = Field(
        default_factory=list, description='Enrichment steps that must succeed'
    )
    enrichment_fallbacks: bool = Field(
        default=True, description='Fill failed optional enrichment steps locally'
    )
    content_rules: List[str] = Field(
        default_factory=list, description='Rules content must satisfy to migrate'
    )
    require_image: bool = Field(
        default=False, description='Fail entries whose image cannot be generated'
    )
    max_keywords: int = Field(default=10, description='Keywords per entry')
    default_category: str = Field(
        default='Uncategorized', description='Category for orphan pages'
    )

    dry_run: bool = Field(default=False, description='Perform dry run without changes')

    @field_validator('batch_size')
    @classmethod
    def validate_batch_size(cls, v):
        """Validate batch size is positive."""
        if v <= 0:
            raise ValueError('Batch size must be positive')
        return v

    @field_validator('max_workers')
    @classmethod
    def validate_max_workers(cls, v):
        """Validate max workers is positive."""
        if v <= 0:
            raise ValueError('Max workers must be positive')
        return v

    @field_validator('batch_delay_ms')
    @classmethod
    def validate_delay(cls, v):
        if v < 0:
            raise ValueError('Delay must not be negative')
        return v

    @field_validator('required_enrichments')
    @classmethod
    def validate_required_enrichments(cls, v):
        for step in v:
            if step not in ENRICHMENT_STEPS:
                raise ValueError(f'Enrichment step must be one of: {ENRICHMENT_STEPS}')
        return v


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default='INFO', description='Log level')
    file: Optional[str] = Field(default=None, description='Log file path')
    format: Optional[str] = Field(default=None, description='Log format')
    serialize: bool = Field(default=False, description='Write the log file as JSON lines')
    library_level: str = Field(
        default='WARNING', description='Log level for HTTP and AWS libraries'
    )

    @field_validator('level', 'library_level')
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f'Log level must be one of: {valid_levels}')
        return v.upper()


class Config(BaseModel):
    """Main configuration class for the Notion migration tool."""

    notion: NotionConfig = Field(..., description='Notion source and destination')
    ai: AIConfig = Field(default_factory=AIConfig, description='AI providers')
    storage: StorageConfig = Field(
        default_factory=StorageConfig, description='Asset storage'
    )
    rate_limits: RateLimitConfig = Field(
        default_factory=RateLimitConfig, description='Per-service rate limits'
    )
    retry: RetryConfig = Field(default_factory=RetryConfig, description='Retries')
    poller: PollerConfig = Field(
        default_factory=PollerConfig, description='Generation job polling'
    )
    migration: MigrationConfig = Field(
        default_factory=MigrationConfig, description='Migration settings'
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig, description='Logging settings'
    )

    model_config = ConfigDict(extra='forbid')  # Don't allow extra fields

    @classmethod
    def from_file(cls, config_path: str) -> 'Config':
        """Load configuration from YAML file."""
        config_file = Path(config_path)

        if not config_file.exists():
            raise FileNotFoundError(f'Configuration file not found: {config_path}')

        with open(config_file, 'r', encoding='utf-8') as f:
            config_data = yaml.safe_load(f) or {}

        return cls(**config_data)

    @classmethod
    def from_env(cls) -> 'Config':
        """Load configuration from environment variables."""
        # Load .env file if it exists
        load_dotenv()

        config_data = {
            'notion': {
                'token': os.getenv('NOTION_TOKEN'),
                'root_page_id': os.getenv('NOTION_ROOT_PAGE_ID'),
                'database_id': os.getenv('NOTION_DATABASE_ID'),
                'categories_database_id': os.getenv('NOTION_CATEGORIES_DATABASE_ID'),
            },
            'ai': {
                'provider': os.getenv('AI_PROVIDER', 'deepseek'),
                'api_key': os.getenv('DEEPSEEK_API_KEY') or os.getenv('OPENAI_API_KEY'),
                'model': os.getenv('AI_MODEL'),
                'image_api_key': os.getenv('DASHSCOPE_API_KEY'),
            },
            'storage': {
                'kind': os.getenv('STORAGE_KIND', 'local'),
                'local_dir': os.getenv('STORAGE_LOCAL_DIR', 'assets'),
                'bucket': os.getenv('AWS_S3_BUCKET'),
                'region': os.getenv('AWS_REGION'),
                'public_base_url': os.getenv('STORAGE_PUBLIC_BASE_URL'),
            },
            'migration': {
                'state_file': os.getenv('MIGRATION_STATE_FILE', 'migration-state.json'),
                'batch_size': int(os.getenv('MIGRATION_BATCH_SIZE', 10)),
                'max_workers': int(os.getenv('MIGRATION_MAX_WORKERS', 3)),
                'batch_delay_ms': int(os.getenv('MIGRATION_BATCH_DELAY_MS', 1000)),
                'generate_images': os.getenv('GENERATE_IMAGES', 'true').lower()
                == 'true',
                'generate_summaries': os.getenv('GENERATE_SUMMARIES', 'true').lower()
                == 'true',
            },
            'logging': {
                'level': os.getenv('LOG_LEVEL', 'INFO'),
                'file': os.getenv('LOG_FILE'),
            },
        }

        # Remove None values
        config_data = cls._remove_none_values(config_data)

        return cls(**config_data)

    @staticmethod
    def _remove_none_values(data: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively remove None values from dictionary."""
        if isinstance(data, dict):
            return {
                k: Config._remove_none_values(v)
                for k, v in data.items()
                if v is not None
            }
        return data

    def to_file(self, config_path: str) -> None:
        """Save configuration to YAML file."""
        config_file = Path(config_path)
        config_file.parent.mkdir(parents=True, exist_ok=True)

        with open(config_file, 'w', encoding='utf-8') as f:
            yaml.safe_dump(
                self.model_dump(mode='json'),
                f,
                default_flow_style=False,
                indent=2,
                sort_keys=False,
            )

    @staticmethod
    def create_template(output_path: str) -> None:
        """Create a configuration template file."""
        template_config = {
            'notion': {
                'token': 'your-notion-integration-token',
                'root_page_id': 'root-page-id',
                'database_id': 'destination-database-id',
            },
            'ai': {
                'provider': 'deepseek',
                'api_key': 'your-deepseek-api-key',
                'image_provider': 'dashscope',
                'image_api_key': 'your-dashscope-api-key',
            },
            'storage': {
                'kind': 'local',
                'local_dir': 'assets',
                'prefix': 'images',
            },
            'rate_limits': {
                'content_source': 3.0,
                'destination': 3.0,
                'ai_provider': 1.0,
                'object_storage': 10.0,
            },
            'retry': {
                'max_attempts': 3,
                'base_delay': 1.0,
                'max_delay': 60.0,
            },
            'poller': {
                'interval': 5.0,
                'max_attempts': 15,
            },
            'migration': {
                'state_file': 'migration-state.json',
                'batch_size': 10,
                'max_workers': 3,
                'batch_delay_ms': 1000,
                'generate_summaries': True,
                'generate_images': True,
                'required_enrichments': [],
                'enrichment_fallbacks': True,
                'content_rules': [],
                'require_image': False,
                'dry_run': False,
            },
            'logging': {
                'level': 'INFO',
                'file': 'migration.log',
            },
        }

        config_file = Path(output_path)
        config_file.parent.mkdir(parents=True, exist_ok=True)

        with open(config_file, 'w', encoding='utf-8') as f:
            yaml.dump(
                template_config, f, default_flow_style=False, indent=2, sort_keys=False
            )

