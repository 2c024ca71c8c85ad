"""Gateway Configuration - Immutable settings loaded once at startup

Self-Explanatory: Object store address/credentials, bucket, secret, part size, logging.
Why: Injected into the gateway at construction; no process-wide mutable state.
How: Frozen pydantic model; from_env() reads os.getenv like the rest of the service.

Secrets are SecretStr so they never show up in logs or reprs.
"""

import os

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

from src.security.stream_cipher import parse_cipher_suite

# S3 refuses multipart parts below 5 MiB (except the last one)
MIN_PART_SIZE = 5 * 1024 * 1024


class GatewaySettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    # Object store
    backend: str = Field(default="s3", description="Object store backend: s3 or memory")
    endpoint_url: str = Field(default="http://127.0.0.1:9000", description="S3/MinIO endpoint")
    access_key: str = Field(default="minioadmin", description="Object store access key")
    secret_key: SecretStr = Field(default=SecretStr("minioadmin"), description="Object store secret key")
    region: str = Field(default="us-east-1", description="Object store region")
    bucket_name: str = Field(default="filesrv", description="Bucket holding all objects")

    # Encryption
    encryption_secret: SecretStr = Field(description="Secret all object keys are derived from")
    cipher_suite: str = Field(default="AES-256-GCM", description="AES-256-GCM or CHACHA20-POLY1305")

    # Streaming
    part_size: int = Field(default=10 << 19, description="Multipart upload part size in bytes")
    max_form_part_size: int = Field(default=10 << 20, description="Limit for non-file form fields")

    # Server
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=2001)
    log_level: str = Field(default="INFO")

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        v = v.lower()
        if v not in {"s3", "memory"}:
            raise ValueError(f"Invalid backend: {v}. Must be 's3' or 'memory'")
        return v

    @field_validator("bucket_name")
    @classmethod
    def validate_bucket_name(cls, v: str) -> str:
        if not v:
            raise ValueError("bucket name must not be empty")
        return v

    @field_validator("encryption_secret")
    @classmethod
    def validate_secret(cls, v: SecretStr) -> SecretStr:
        if not v.get_secret_value():
            raise ValueError("encryption secret must not be empty")
        return v

    @field_validator("cipher_suite")
    @classmethod
    def validate_cipher_suite(cls, v: str) -> str:
        parse_cipher_suite(v)
        return v.upper()

    @field_validator("part_size")
    @classmethod
    def validate_part_size(cls, v: int) -> int:
        if v < MIN_PART_SIZE:
            raise ValueError(f"part size must be at least {MIN_PART_SIZE} bytes")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v_upper

    @classmethod
    def from_env(cls) -> "GatewaySettings":
        """Build settings from environment variables"""
        values = {
            "backend": os.getenv("OBJECT_STORE_BACKEND"),
            "endpoint_url": os.getenv("OBJECT_STORE_ENDPOINT"),
            "access_key": os.getenv("OBJECT_STORE_ACCESS_KEY"),
            "secret_key": os.getenv("OBJECT_STORE_SECRET_KEY"),
            "region": os.getenv("OBJECT_STORE_REGION"),
            "bucket_name": os.getenv("BUCKET_NAME"),
            "encryption_secret": os.getenv("ENCRYPTION_SECRET", ""),
            "cipher_suite": os.getenv("CIPHER_SUITE"),
            "part_size": os.getenv("PART_SIZE_BYTES"),
            "max_form_part_size": os.getenv("MAX_FORM_PART_SIZE"),
            "api_host": os.getenv("API_HOST"),
            "api_port": os.getenv("API_PORT"),
            "log_level": os.getenv("LOG_LEVEL"),
        }
        return cls(**{k: v for k, v in values.items() if v is not None})
