"""
mjpeg_relay Configuration
=========================

This module handles configuration loading for the relay.

Configuration Sources (in order of precedence):
    1. Environment variables (highest priority)
    2. config.yaml file
    3. Default values (lowest priority)

Environment Variable Mapping:
    MJPEG_READER_URL        -> reader.url
    MJPEG_READER_LOGIN      -> reader.login
    MJPEG_READER_PASSWORD   -> reader.password
    MJPEG_READER_AUTH       -> reader.authentication
    MJPEG_RESTART_ON_ERROR  -> reader.restart_on_error
    MJPEG_READ_TIMEOUT      -> reader.read_timeout
    MJPEG_GIVE_UP_TIMEOUT   -> reader.give_up_timeout
    MJPEG_RECONNECT_DELAY   -> reader.reconnect_delay
    MJPEG_SERVER_HOST       -> server.host
    MJPEG_SERVER_PORT       -> server.port
    PORT                    -> server.port (takes precedence)
    MJPEG_SINGLE_FRAME      -> server.single_frame
    MJPEG_CAPTURE_DEVICE    -> capture.device_index
    MJPEG_LOG_LEVEL         -> logging.level

Example:
    from mjpeg_relay.config import load_config, setup_logging

    settings = load_config()
    setup_logging(settings)
    print(settings.reader.url)
"""

import os
import logging
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, model_validator


logger = logging.getLogger(__name__)


# =============================================================================
# Configuration Models
# =============================================================================

class AppConfig(BaseModel):
    """Application identification."""

    name: str = Field(default="mjpeg-relay", description="Service name")
    version: str = Field(default="v0.1.0", description="Service version")


class ReaderConfig(BaseModel):
    """Remote MJPEG camera connection configuration."""

    url: str = Field(
        default="http://localhost:8080/video",
        description="URL of the remote MJPEG stream",
    )
    login: Optional[str] = Field(
        default=None,
        description="Optional login; credentials are sent only when set",
    )
    password: Optional[str] = Field(
        default=None,
        description="Optional password",
    )
    authentication: str = Field(
        default="Basic",
        description="Authentication scheme: 'Basic' or 'Digest'",
    )
    restart_on_error: bool = Field(
        default=True,
        description="Reconnect when the connection is lost",
    )
    read_timeout: float = Field(
        default=0.2,
        gt=0,
        description="Timeout for each stream read operation (seconds)",
    )
    give_up_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Time without frames before the connection is lost (seconds)",
    )
    reconnect_delay: float = Field(
        default=1.0,
        ge=0,
        description="Delay before reconnecting after a lost connection (seconds)",
    )
    connect_timeout: float = Field(
        default=3.0,
        gt=0,
        description="Timeout for establishing the connection (seconds)",
    )

    @model_validator(mode="after")
    def _check_timeouts(self) -> "ReaderConfig":
        if self.give_up_timeout < self.read_timeout:
            raise ValueError("give_up_timeout must be >= read_timeout")
        return self


class ServerConfig(BaseModel):
    """Frame server configuration."""

    host: str = Field(default="0.0.0.0", description="Bind host")
    port: int = Field(
        default=0,
        ge=0,
        le=65535,
        description="Bind port (0 = first free port)",
    )
    single_frame: bool = Field(
        default=False,
        description="Send a single image for each request",
    )
    shutdown_grace_seconds: float = Field(
        default=2.0,
        ge=0,
        description="Time given to open responses before they are closed",
    )
    access_log: bool = Field(default=False, description="Log every request")


class CaptureConfig(BaseModel):
    """Local webcam capture configuration."""

    device_index: int = Field(default=0, ge=0, description="OpenCV camera index")
    jpeg_quality: int = Field(default=75, ge=1, le=100, description="JPEG quality")
    poll_interval: float = Field(
        default=0.03,
        gt=0,
        description="Interval between frame buffer updates (seconds)",
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="text", description="Log format: json or text")


class Settings(BaseModel):
    """
    Main settings class for mjpeg_relay.

    Loads configuration from YAML file and environment variables.
    Environment variables take precedence over file values.
    """

    app: AppConfig = Field(default_factory=AppConfig)
    reader: ReaderConfig = Field(default_factory=ReaderConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# =============================================================================
# Configuration Loading
# =============================================================================

def load_config(config_path: Optional[str] = None) -> Settings:
    """
    Load configuration from YAML file and environment variables.

    Priority (highest to lowest):
        1. Environment variables
        2. YAML config file
        3. Default values

    Args:
        config_path: Path to config.yaml. If None, searches common locations.

    Returns:
        Settings: Loaded configuration
    """
    # Find config file
    if config_path is None:
        for path in (Path("config.yaml"), Path("config.yml")):
            if path.exists():
                config_path = str(path)
                break

    # Load from YAML if exists
    config_data = {}
    if config_path and Path(config_path).exists():
        logger.info(f"Loading config from: {config_path}")
        with open(config_path, "r") as f:
            config_data = yaml.safe_load(f) or {}
    elif config_path:
        logger.warning(f"Config file not found: {config_path}, using defaults")
    else:
        logger.debug("No config file found, using defaults and environment variables")

    # Apply environment variable overrides
    _apply_env_overrides(config_data)

    return Settings.model_validate(config_data)


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _apply_env_overrides(config_data: dict) -> None:
    """Apply environment variable overrides to config data."""

    # Reader settings
    reader = {}
    if env_url := os.environ.get("MJPEG_READER_URL"):
        reader["url"] = env_url
    if env_login := os.environ.get("MJPEG_READER_LOGIN"):
        reader["login"] = env_login
    if env_password := os.environ.get("MJPEG_READER_PASSWORD"):
        reader["password"] = env_password
    if env_auth := os.environ.get("MJPEG_READER_AUTH"):
        reader["authentication"] = env_auth
    if env_restart := os.environ.get("MJPEG_RESTART_ON_ERROR"):
        reader["restart_on_error"] = _env_bool(env_restart)
    if env_read := os.environ.get("MJPEG_READ_TIMEOUT"):
        reader["read_timeout"] = float(env_read)
    if env_give_up := os.environ.get("MJPEG_GIVE_UP_TIMEOUT"):
        reader["give_up_timeout"] = float(env_give_up)
    if env_delay := os.environ.get("MJPEG_RECONNECT_DELAY"):
        reader["reconnect_delay"] = float(env_delay)
    if reader:
        config_data.setdefault("reader", {}).update(reader)

    # Server settings (PORT wins, as on most container platforms)
    if env_host := os.environ.get("MJPEG_SERVER_HOST"):
        config_data.setdefault("server", {})["host"] = env_host
    if env_port := os.environ.get("PORT"):
        config_data.setdefault("server", {})["port"] = int(env_port)
    elif env_port := os.environ.get("MJPEG_SERVER_PORT"):
        config_data.setdefault("server", {})["port"] = int(env_port)
    if env_single := os.environ.get("MJPEG_SINGLE_FRAME"):
        config_data.setdefault("server", {})["single_frame"] = _env_bool(env_single)

    # Capture settings
    if env_device := os.environ.get("MJPEG_CAPTURE_DEVICE"):
        config_data.setdefault("capture", {})["device_index"] = int(env_device)

    # Logging settings
    if env_log := os.environ.get("MJPEG_LOG_LEVEL"):
        config_data.setdefault("logging", {})["level"] = env_log


def setup_logging(settings: Settings) -> None:
    """Configure logging based on settings."""
    log_level = getattr(logging, settings.logging.level.upper(), logging.INFO)

    if settings.logging.format == "json":
        log_format = '{"time": "%(asctime)s", "level": "%(levelname)s", "module": "%(name)s", "message": "%(message)s"}'
    else:
        log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=log_level,
        format=log_format,
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
