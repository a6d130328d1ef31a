"""Builds the provider-side assistant configuration for one tenant."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

MAX_PROMPT_ITEMS = 20


@dataclass(frozen=True)
class ContextItem:
    """A catalog item used to seed the assistant's knowledge."""

    title: str
    price_cents: int | None = None
    currency: str = "USD"

    def describe(self) -> str:
        if self.price_cents is None:
            return self.title
        return f"{self.title} ({self.price_cents / 100:.2f} {self.currency})"


# Functions the assistant may call back into the gateway.
FUNCTION_DEFINITIONS: list[dict[str, Any]] = [
    {
        "name": "get_products",
        "description": "List products from the store catalog.",
        "parameters": {
            "type": "object",
            "properties": {
                "limit": {"type": "integer", "description": "Maximum number of products to return."},
            },
        },
    },
    {
        "name": "search_products",
        "description": "Search the store catalog by product title.",
        "parameters": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Words to look for in product titles."},
            },
            "required": ["query"],
        },
    },
]


def _system_prompt(tenant_name: str, items: list[ContextItem], business_hours: str | None) -> str:
    lines = [
        f"You are the friendly phone receptionist for {tenant_name}.",
        "Answer questions about products, availability and the store. Keep answers short and clear.",
        "Use the get_products and search_products functions for up-to-date catalog details.",
        "",
        "Featured products:",
    ]
    lines.extend(f"- {item.describe()}" for item in items[:MAX_PROMPT_ITEMS])
    if business_hours:
        lines.extend(["", f"Business hours: {business_hours}"])
    return "\n".join(lines)


def build_assistant_config(
    *,
    tenant_name: str,
    items: list[ContextItem],
    server_url: str,
    server_secret: str,
    voice_id: str = "rachel",
    business_hours: str | None = None,
) -> dict[str, Any]:
    """Return the JSON body for the provider's create-assistant call.

    Parameters
    ----------
    tenant_name:
        Store display name, used in the assistant name and greeting.
    items:
        Context items (never empty; callers substitute a placeholder).
    server_url:
        Tenant-specific function-call URL on this gateway.
    server_secret:
        Shared secret the provider sends back on function calls.
    """
    return {
        "name": f"{tenant_name} Receptionist"[:40],
        "model": {
            "provider": "openai",
            "model": "gpt-4o-mini",
            "messages": [{"role": "system", "content": _system_prompt(tenant_name, items, business_hours)}],
            "functions": FUNCTION_DEFINITIONS,
        },
        "voice": {"provider": "11labs", "voiceId": voice_id},
        "firstMessage": f"Thank you for calling {tenant_name}! How can I help you today?",
        "voicemailMessage": f"You've reached {tenant_name}. Please leave a message and we'll get back to you.",
        "endCallMessage": "Thanks for calling. Have a great day!",
        "serverUrl": server_url,
        "serverUrlSecret": server_secret,
    }
