"""
JSON schemas for configuration validation.
"""

PROVIDER_SCHEMA = {
    "type": "object",
    "properties": {
        "api_key": {"type": ["string", "null"]},
        "base_url": {"type": ["string", "null"]},
        "timeout": {"type": "number", "minimum": 0.1},
        "estimated_duration_seconds": {"type": "integer", "minimum": 1},
    },
    "additionalProperties": True,
}

OPENAI_SCHEMA = {
    "allOf": [
        PROVIDER_SCHEMA,
        {
            "properties": {
                "image_model": {"type": "string"},
                "image_quality": {"type": "string", "enum": ["standard", "hd"]},
                "story_model": {"type": "string"},
                "story_temperature": {"type": "number", "minimum": 0.0, "maximum": 2.0},
                "story_max_tokens": {"type": "integer", "minimum": 1},
            }
        },
    ]
}

REPLICATE_SCHEMA = {
    "allOf": [
        PROVIDER_SCHEMA,
        {
            "properties": {
                "model_version": {"type": "string"},
                "poll_interval": {"type": "number", "exclusiveMinimum": 0},
                "max_wait": {"type": "number", "exclusiveMinimum": 0},
            }
        },
    ]
}

CREDITS_SCHEMA = {
    "type": "object",
    "properties": {
        "guest_initial_credits": {"type": "integer", "minimum": 0},
        "registered_initial_credits": {"type": "integer", "minimum": 0},
        "history_limit": {"type": "integer", "minimum": 1},
    },
    "additionalProperties": False,
}

ADMISSION_SCHEMA = {
    "type": "object",
    "properties": {
        "generation_max_requests": {"type": "integer", "minimum": 1},
        "generation_window_seconds": {"type": "integer", "minimum": 1},
        "origin_max_requests": {"type": "integer", "minimum": 1},
        "origin_window_seconds": {"type": "integer", "minimum": 1},
        "max_concurrent_jobs": {"type": "integer", "minimum": 1},
        "abuse_requests_per_second": {"type": "integer", "minimum": 1},
        "abuse_block_seconds": {"type": "integer", "minimum": 0},
        "stale_job_seconds": {"type": "integer", "minimum": 1},
        "key_ttl_seconds": {"type": "integer", "minimum": 1},
    },
    "additionalProperties": False,
}

ROUTING_SCHEMA = {
    "type": "object",
    "properties": {
        "preferred_image_provider": {"type": "string", "enum": ["openai", "replicate"]},
        "fallback_enabled": {"type": "boolean"},
        "story_fallback_model": {"type": ["string", "null"]},
    },
    "additionalProperties": False,
}

ORCHESTRATOR_SCHEMA = {
    "type": "object",
    "properties": {
        "generation_timeout": {"type": "number", "exclusiveMinimum": 0},
        "settle_attempts": {"type": "integer", "minimum": 1},
        "settle_backoff": {"type": "number", "minimum": 0},
        "outbox_max_retries": {"type": "integer", "minimum": 1},
    },
    "additionalProperties": False,
}

LOGGING_SCHEMA = {
    "type": "object",
    "properties": {
        "level": {"type": "string", "enum": ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]},
        "format": {"type": "string", "enum": ["text", "json"]},
        "log_admission": {"type": "boolean"},
        "log_ledger": {"type": "boolean"},
        "redact_api_keys": {"type": "boolean"},
    },
    "additionalProperties": False,
}

CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "openai": OPENAI_SCHEMA,
        "replicate": REPLICATE_SCHEMA,
        "credits": CREDITS_SCHEMA,
        "admission": ADMISSION_SCHEMA,
        "routing": ROUTING_SCHEMA,
        "orchestrator": ORCHESTRATOR_SCHEMA,
        "logging": LOGGING_SCHEMA,
    },
    "additionalProperties": False,
}
