"""Configuration management for imgdocs.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the IMGDOCS_ prefix,
allowing easy customization without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (IMGDOCS_* prefix)
2. .env file in the project root
3. Default values defined in ImgDocsConfig

Example .env file:
    IMGDOCS_MODEL_ID=Tongyi-MAI/Z-Image-Turbo
    IMGDOCS_DEVICE=cuda
    IMGDOCS_DATA_DIR=data
    IMGDOCS_REQUEST_STALE_SECONDS=300

Global Configuration Instance
------------------------------
A global `config` instance is created automatically at module import time.
It is the single source of truth for the API layer; the core engine
(dedup store, orchestrator, storage) takes its settings explicitly so tests
can build isolated instances.

Usage Example
-------------
    from imgdocs.core.config import config

    print(config.model_id)
    print(config.documents_dir)

Directory Management
--------------------
The configuration automatically creates required directories on initialization:
- models_dir: For cached model files
- data_dir: Root for persisted image documents (``data_dir/documents``)
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ImgDocsConfig(BaseSettings):
    """Main configuration for imgdocs.

    Values are loaded from environment variables with the IMGDOCS_ prefix,
    with fallback to defaults defined here.

    Attributes
    ----------
    Model Settings:
        model_id : str
            HuggingFace model ID used when a request does not name one
        torch_dtype : Literal["bfloat16", "float16", "float32"]
            Torch dtype for model inference (bfloat16 recommended)
        device : str
            Device for inference (cuda, mps, or cpu)

    Generation Defaults:
        num_inference_steps : int
            Default number of inference steps
        guidance_scale : float
            Default guidance scale (forced to 0.0 for turbo models)
        default_width : int
            Default image width in pixels (512-2048)
        default_height : int
            Default image height in pixels (512-2048)

    Performance Optimization:
        enable_attention_slicing : bool
            Enable attention slicing for lower VRAM usage
        enable_model_cpu_offload : bool
            Enable CPU offloading for memory-constrained setups
        compile_model : bool
            Compile model for faster inference (slower first run)

    Paths:
        models_dir : Path
            Directory to cache downloaded models
        data_dir : Path
            Root directory for persisted image documents

    Request Deduplication:
        request_stale_seconds : float
            Age after which dispatch timestamps of settled requests are pruned

    Server Settings:
        server_host : str
            Server bind address
        server_port : int
            Server port (1024-65535)
        log_level : str
            Root logging level for the console entry point

    Examples
    --------
        >>> custom_config = ImgDocsConfig(device="cpu", data_dir="/tmp/imgdocs")
        >>> custom_config.documents_dir
        PosixPath('/tmp/imgdocs/documents')
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="IMGDOCS_",
        case_sensitive=False,
    )

    # Model settings
    model_id: str = Field(
        default="Tongyi-MAI/Z-Image-Turbo",
        description="HuggingFace model ID used when a request does not name one",
    )
    torch_dtype: Literal["bfloat16", "float16", "float32"] = Field(
        default="bfloat16",
        description="Torch dtype for model inference",
    )
    device: str = Field(
        default="cuda",
        description="Device to run inference on (cuda/cpu)",
    )

    # Generation defaults
    num_inference_steps: int = Field(
        default=9,
        description="Default number of inference steps",
        ge=1,
        le=50,
    )
    guidance_scale: float = Field(
        default=0.0,
        description="Default guidance scale (forced to 0.0 for turbo models)",
    )
    default_width: int = Field(default=1024, ge=512, le=2048)
    default_height: int = Field(default=1024, ge=512, le=2048)

    # Performance optimizations
    enable_attention_slicing: bool = Field(
        default=False,
        description="Enable attention slicing for lower VRAM usage",
    )
    enable_model_cpu_offload: bool = Field(
        default=False,
        description="Enable CPU offloading for memory-constrained setups",
    )
    compile_model: bool = Field(
        default=False,
        description="Compile model for faster inference (slower first run)",
    )

    # Paths
    models_dir: Path = Field(
        default=Path("models"),
        description="Directory to cache models",
    )
    data_dir: Path = Field(
        default=Path("data"),
        description="Root directory for persisted image documents",
    )

    # Request deduplication
    request_stale_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Age after which dispatch timestamps of settled requests are pruned",
    )

    # Server settings
    server_host: str = Field(
        default="0.0.0.0",
        description="Server bind address (0.0.0.0 for local network)",
    )
    server_port: int = Field(
        default=7860,
        description="Server port",
        ge=1024,
        le=65535,
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Root logging level for the console entry point",
    )

    def __init__(self, **kwargs):
        """Initialize configuration and create required directories.

        Args:
            **kwargs: Configuration overrides (typically from environment variables)
        """
        super().__init__(**kwargs)

        self.models_dir.mkdir(parents=True, exist_ok=True)
        self.documents_dir.mkdir(parents=True, exist_ok=True)

    @property
    def documents_dir(self) -> Path:
        """Directory holding one sub-directory per persisted document."""
        return self.data_dir / "documents"


# Global configuration instance, loaded from IMGDOCS_* variables and .env.
config = ImgDocsConfig()
