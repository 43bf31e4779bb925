"""
Agent preset messages and the agent/user-profile records the builder reads.

A preset entry is one of three variants: a plain text message, the slot
where the user profile goes, or the slot where session history is
spliced in.
"""

from dataclasses import dataclass, field
from typing import Any, Union

DEFAULT_INJECTION_ORDER = 100


@dataclass
class TextPreset:
    """A fixed message configured on an agent."""

    role: str
    content: str
    is_enabled: bool = True
    depth: int | None = None
    order: int = DEFAULT_INJECTION_ORDER
    id: str | None = None

    @property
    def is_depth_injection(self) -> bool:
        return self.depth is not None


@dataclass
class UserProfileSlot:
    """Where the active user profile is placed in the system block."""

    is_enabled: bool = True


@dataclass
class ChatHistorySlot:
    """Where session history is spliced among the presets."""

    is_enabled: bool = True


PresetEntry = Union[TextPreset, UserProfileSlot, ChatHistorySlot]


def parse_preset(data: dict[str, Any]) -> PresetEntry:
    """Build a preset entry from its stored dict form."""
    preset_type = data.get("type", "message")
    is_enabled = data.get("is_enabled", True)

    if preset_type == "user_profile":
        return UserProfileSlot(is_enabled=is_enabled)
    if preset_type == "chat_history":
        return ChatHistorySlot(is_enabled=is_enabled)

    strategy = data.get("injection_strategy") or {}
    depth = data.get("depth", strategy.get("depth"))
    order = data.get("order", strategy.get("order", DEFAULT_INJECTION_ORDER))
    return TextPreset(
        role=data.get("role", "system"),
        content=data.get("content", ""),
        is_enabled=is_enabled,
        depth=int(depth) if depth is not None else None,
        order=int(order),
        id=data.get("id"),
    )


def preset_to_dict(preset: PresetEntry) -> dict[str, Any]:
    if isinstance(preset, UserProfileSlot):
        return {"type": "user_profile", "is_enabled": preset.is_enabled}
    if isinstance(preset, ChatHistorySlot):
        return {"type": "chat_history", "is_enabled": preset.is_enabled}
    data: dict[str, Any] = {
        "type": "message",
        "role": preset.role,
        "content": preset.content,
        "is_enabled": preset.is_enabled,
    }
    if preset.id is not None:
        data["id"] = preset.id
    if preset.depth is not None:
        data["depth"] = preset.depth
        data["order"] = preset.order
    return data


@dataclass
class UserProfile:
    """The persona of the human side of the conversation."""

    id: str
    name: str = "User"
    content: str = ""


@dataclass
class AgentConfig:
    """Model selection, presets and per-agent overrides."""

    id: str
    name: str
    profile_id: str
    model_id: str
    description: str | None = None
    preset_messages: list[PresetEntry] = field(default_factory=list)
    context_management: dict[str, Any] | None = None
    compression: dict[str, Any] | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    user_profile_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentConfig":
        presets = [
            p if isinstance(p, (TextPreset, UserProfileSlot, ChatHistorySlot)) else parse_preset(p)
            for p in data.get("preset_messages") or []
        ]
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            profile_id=data["profile_id"],
            model_id=data["model_id"],
            description=data.get("description"),
            preset_messages=presets,
            context_management=data.get("context_management"),
            compression=data.get("compression"),
            temperature=data.get("temperature"),
            max_tokens=data.get("max_tokens"),
            user_profile_id=data.get("user_profile_id"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "profile_id": self.profile_id,
            "model_id": self.model_id,
            "description": self.description,
            "preset_messages": [preset_to_dict(p) for p in self.preset_messages],
            "context_management": self.context_management,
            "compression": self.compression,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "user_profile_id": self.user_profile_id,
        }
