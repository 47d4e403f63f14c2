"""OpenAPI customization.

Adds the ``X-API-Key`` security scheme and applies it only to the
maintenance endpoints; the check endpoint and health probe stay open.
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import FastAPI

_PROTECTED_SUFFIXES = ("/rate-limit/status", "/rate-limit/reset", "/rate-limit/prune")

_TAGS = [
    {
        "name": "Rate limit",
        "description": "Attempt counting for sign-in, sign-up, password reset and API calls.",
    },
    {
        "name": "Health",
        "description": "Liveness checks.",
    },
]


def apply_openapi_customizations(app: FastAPI) -> None:
    """Patch FastAPI's OpenAPI generation to add tags and API key security."""

    original_openapi = app.openapi

    def custom_openapi() -> Dict[str, Any]:
        schema = original_openapi()

        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes.setdefault(
            "ApiKeyAuth",
            {
                "type": "apiKey",
                "in": "header",
                "name": "X-API-Key",
                "description": "Required on maintenance endpoints.",
            },
        )

        tags = schema.setdefault("tags", [])
        existing_tag_names = {t.get("name") for t in tags}
        tags.extend(tag for tag in _TAGS if tag["name"] not in existing_tag_names)

        for path, methods in schema.get("paths", {}).items():
            if not path.endswith(_PROTECTED_SUFFIXES):
                continue
            for method_obj in methods.values():
                if isinstance(method_obj, dict):
                    method_obj["security"] = [{"ApiKeyAuth": []}]

        return schema

    app.openapi = custom_openapi  # type: ignore[assignment]
