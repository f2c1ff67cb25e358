"""
Guard rules: admin-configured hidden instructions merged into the prompt
sent to a backend.

The merged execution prompt only ever goes to the provider adapter. Callers
persist ExecutionPrompt.user_prompt, which never contains rule text.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Protocol

from sqlalchemy import func, select

from orchestrator.database import SessionLocal
from orchestrator.models import GuardRule

logger = logging.getLogger(__name__)

PROMPT_PLACEHOLDER = "{prompt}"
GENERIC_GENERATION_TYPE = "image"


class RuleType(str, Enum):
    FACE_PRESERVE = "face_preserve"
    SAFETY_NSFW = "safety_nsfw"
    NEGATIVE_PROMPT = "negative_prompt"
    QUALITY_CONTROL = "quality_control"
    CUSTOM = "custom"


class GenerationType(str, Enum):
    IMAGE = "image"
    IMAGE_TO_IMAGE = "image_to_image"
    TEXT_TO_IMAGE = "text_to_image"


@dataclass
class ExecutionPrompt:
    execution_prompt: str  # sent to the backend, includes hidden rules
    negative_prompt: str
    user_prompt: str       # safe to persist and show


class GuardRuleStore(Protocol):
    def load_enabled_rules(self) -> Iterable:
        ...


def merge_base_prompt(user_prompt: Optional[str], template_prompt: Optional[str]) -> str:
    """
    Combines a template prompt with the user's prompt.

    A template containing {prompt} gets the user prompt substituted in;
    otherwise the template is used as a prefix.
    """
    user_prompt = (user_prompt or "").strip()
    template_prompt = (template_prompt or "").strip()
    if not template_prompt:
        return user_prompt
    if PROMPT_PLACEHOLDER in template_prompt:
        return template_prompt.replace(PROMPT_PLACEHOLDER, user_prompt).strip()
    if not user_prompt:
        return template_prompt
    return f"{template_prompt}, {user_prompt}"


def rule_applies(rule, generation_type: str) -> bool:
    apply_to = rule.apply_to or []
    if not apply_to:
        return True
    return generation_type in apply_to or GENERIC_GENERATION_TYPE in apply_to


class GuardRuleEngine:
    def __init__(self, store: GuardRuleStore):
        self.store = store

    def build_execution_prompt(
        self,
        user_prompt: Optional[str],
        template_prompt: Optional[str],
        generation_type: str,
    ) -> ExecutionPrompt:
        """
        Merges prompts with the enabled guard rules, in ascending priority.

        Non-negative rule types are prepended to the prompt as
        "<rule>. <rule>. <base prompt>"; negative_prompt rules are joined
        with ", " into the negative prompt.

        Fail-open: if the rules can't be loaded or applied, the base prompt
        is returned unchanged with an empty negative prompt.
        """
        base_prompt = merge_base_prompt(user_prompt, template_prompt)

        try:
            rules = [rule for rule in self.store.load_enabled_rules() if rule.enabled]
            rules.sort(key=lambda rule: rule.priority)
            applicable_rules = [rule for rule in rules if rule_applies(rule, generation_type)]
            logger.info("Guard: %d of %d enabled rules apply to %s",
                        len(applicable_rules), len(rules), generation_type)

            system_prompts = []
            negative_prompts = []
            for rule in applicable_rules:
                hidden_prompt = (rule.hidden_prompt or "").strip()
                if not hidden_prompt:
                    continue
                if rule.rule_type == RuleType.NEGATIVE_PROMPT.value:
                    negative_prompts.append(hidden_prompt)
                else:
                    system_prompts.append(hidden_prompt)

            execution_prompt = base_prompt
            if system_prompts:
                execution_prompt = f"{'. '.join(system_prompts)}. {base_prompt}"

            # Lengths only; rule text stays out of the logs
            logger.debug("Guard: execution prompt %d chars, negative prompt %d chars",
                         len(execution_prompt), len(", ".join(negative_prompts)))
            return ExecutionPrompt(
                execution_prompt=execution_prompt,
                negative_prompt=", ".join(negative_prompts),
                user_prompt=base_prompt,
            )
        except Exception as e:
            logger.error("Guard rule error: %s", e)
            logger.warning("Guard rules failed - proceeding with base prompt")
            return ExecutionPrompt(execution_prompt=base_prompt, negative_prompt="", user_prompt=base_prompt)


DEFAULT_RULES = [
    {
        "rule_name": "NSFW & Safety Block",
        "rule_type": RuleType.SAFETY_NSFW.value,
        "priority": 0,
        "hidden_prompt": "Generate safe, appropriate, family-friendly content. No violence, nudity, gore, "
                         "or explicit content. Maintain professional and respectful tone.",
        "apply_to": ["image", "image_to_image", "text_to_image"],
    },
    {
        "rule_name": "Face Preservation",
        "rule_type": RuleType.FACE_PRESERVE.value,
        "priority": 1,
        "hidden_prompt": "Preserve the exact facial features, skin tone, hair, eyes, and identity of the "
                         "person in the reference image.",
        "apply_to": ["image_to_image"],
    },
    {
        "rule_name": "Global Negative Prompt",
        "rule_type": RuleType.NEGATIVE_PROMPT.value,
        "priority": 2,
        "hidden_prompt": "ugly, deformed, distorted, blurry, low quality, amateur, watermark, text, "
                         "signature, bad anatomy, extra limbs",
        "apply_to": ["image", "image_to_image", "text_to_image"],
    },
    {
        "rule_name": "Quality Enhancement",
        "rule_type": RuleType.QUALITY_CONTROL.value,
        "priority": 3,
        "hidden_prompt": "Generate high-quality, professional-grade image with sharp details, proper "
                         "lighting, and realistic textures.",
        "apply_to": ["image", "image_to_image", "text_to_image"],
    },
]


class SqlGuardRuleStore:
    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    def load_enabled_rules(self) -> list:
        with self.session_factory() as session:
            return list(session.scalars(
                select(GuardRule).where(GuardRule.enabled.is_(True)).order_by(GuardRule.priority)
            ))

    def seed_default_rules(self) -> int:
        """Inserts DEFAULT_RULES into an empty table. Returns how many rules exist afterwards."""
        with self.session_factory() as session:
            existing_count = session.scalar(select(func.count()).select_from(GuardRule))
            if existing_count:
                logger.info("Guard rules already exist (%d)", existing_count)
                return existing_count
            session.add_all(GuardRule(enabled=True, **rule) for rule in DEFAULT_RULES)
            session.commit()
            logger.info("Created %d default guard rules", len(DEFAULT_RULES))
            return len(DEFAULT_RULES)
