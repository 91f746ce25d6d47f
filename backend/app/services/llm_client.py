"""LLM Client abstraction for OpenAI and Gemini APIs.

This module provides a unified interface for asking an LLM provider to
explain the business impact of a compliance control finding and to suggest
remediation steps. The generated text is stored on the control's metadata
so it survives later scans.
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

from pydantic import BaseModel, Field

from app.config import Settings, get_settings

logger = logging.getLogger(__name__)

# Resources included in a prompt; benchmark results can list thousands
MAX_PROMPT_RESOURCES = 10


# Prompt Templates
BUSINESS_CONTEXT_PROMPT = """
Explain the business impact of the following cloud compliance control result
to a non-technical stakeholder.

Framework: {framework}
Control: {control_id}
Title: {title}
Description: {description}
Result: {scan_status}
Reason: {reason}

The explanation should:
1. State what the control protects against
2. Describe the risk to the business if the control is not met
3. Mention the regulatory or audit consequence for the framework

Return ONLY the explanation text, no additional formatting.
"""

REMEDIATION_PROMPT = """
Suggest remediation steps for the following cloud compliance control result.

Framework: {framework}
Control: {control_id}
Title: {title}
Result: {scan_status}
Reason: {reason}
Affected Resources: {resources_json}

Provide specific, actionable steps to resolve this finding.
The remediation should:
1. Reference the affected resources where possible
2. Provide clear steps that can be followed in the cloud console or CLI
3. Call out permissions the scanning credential is missing, if the reason is an access denial

Return ONLY the remediation steps, no additional formatting.
"""


class ControlContext(BaseModel):
    """The parts of a finding an LLM needs to reason about a control."""
    control_id: str = Field(..., description="Benchmark control identifier")
    title: str = Field(default="", description="Control title")
    description: Optional[str] = Field(default=None, description="Control description")
    framework: str = Field(..., description="Compliance framework")
    scan_status: str = Field(..., description="pass, fail, error or skip")
    reason: Optional[str] = Field(default=None, description="Reason reported by the engine")
    resources: list[Any] = Field(default_factory=list, description="Per-resource results")


class GeneratedControlContent(BaseModel):
    """AI-authored text for a control."""
    ai_business_context: str
    ai_remediation_guidance: str


def _strip_code_fences(response: str) -> str:
    cleaned = response.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.split("\n", 1)[1] if "\n" in cleaned else cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


class BaseLLMClient(ABC):
    """Abstract base class for LLM clients."""

    @abstractmethod
    async def _generate(self, prompt: str) -> str:
        """Generate a response from the LLM.

        Args:
            prompt: The prompt to send to the LLM.

        Returns:
            The generated response text.
        """
        pass

    async def explain_business_context(self, control: ControlContext) -> str:
        """Explain what a control result means for the business.

        Args:
            control: The control and its latest result.

        Returns:
            A plain-language explanation.
        """
        prompt = BUSINESS_CONTEXT_PROMPT.format(
            framework=control.framework,
            control_id=control.control_id,
            title=control.title,
            description=control.description or "",
            scan_status=control.scan_status,
            reason=control.reason or "",
        )
        response = await self._generate(prompt)
        return _strip_code_fences(response)

    async def suggest_remediation(self, control: ControlContext) -> str:
        """Suggest remediation steps for a control result.

        Args:
            control: The control and its latest result.

        Returns:
            Actionable remediation steps.
        """
        prompt = REMEDIATION_PROMPT.format(
            framework=control.framework,
            control_id=control.control_id,
            title=control.title,
            scan_status=control.scan_status,
            reason=control.reason or "",
            resources_json=json.dumps(control.resources[:MAX_PROMPT_RESOURCES], indent=2, default=str),
        )
        response = await self._generate(prompt)
        return _strip_code_fences(response)


class OpenAIClient(BaseLLMClient):
    """LLM client implementation using OpenAI API."""

    def __init__(self, api_key: str, model: str = "gpt-4o"):
        """Initialize the OpenAI client.

        Args:
            api_key: OpenAI API key.
            model: Model name to use (default: gpt-4o).
        """
        from openai import AsyncOpenAI

        self.client = AsyncOpenAI(api_key=api_key)
        self.model = model

    async def _generate(self, prompt: str) -> str:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {
                    "role": "system",
                    "content": "You are a cloud compliance advisor. Provide accurate, concise answers."
                },
                {"role": "user", "content": prompt}
            ],
            temperature=0.2,
        )
        return response.choices[0].message.content or ""


class GeminiClient(BaseLLMClient):
    """LLM client implementation using Google Gemini API."""

    def __init__(self, api_key: str, model: str = "gemini-2.0-flash"):
        """Initialize the Gemini client.

        Args:
            api_key: Google Gemini API key.
            model: Model name to use (default: gemini-2.0-flash).
        """
        import google.generativeai as genai

        genai.configure(api_key=api_key)
        self.model = genai.GenerativeModel(model)

    async def _generate(self, prompt: str) -> str:
        response = await self.model.generate_content_async(
            prompt,
            generation_config={"temperature": 0.2},
        )
        return response.text or ""


class LLMClient:
    """Factory class for creating LLM clients based on configuration.

    Usage:
        client = LLMClient()
        content = await client.generate_control_content(control)
    """

    def __init__(self, settings: Optional[Settings] = None):
        """Initialize the LLM client based on configuration."""
        self._client = self._create_client(settings or get_settings())

    def _create_client(self, settings: Settings) -> BaseLLMClient:
        """Create the appropriate LLM client based on settings.

        Raises:
            ValueError: If the configured provider is not supported or
                the required API key is missing.
        """
        provider = settings.llm_provider.lower()

        if provider == "openai":
            if not settings.openai_api_key:
                raise ValueError("OpenAI API key is required when using OpenAI provider")
            return OpenAIClient(api_key=settings.openai_api_key, model=settings.llm_model)
        elif provider in ("gemini", "google"):
            if not settings.gemini_api_key:
                raise ValueError("Gemini API key is required when using Gemini provider")
            model = settings.llm_model
            if model.startswith("gpt"):
                model = "gemini-2.0-flash"
            return GeminiClient(api_key=settings.gemini_api_key, model=model)
        else:
            raise ValueError(f"Unsupported LLM provider: {provider}")

    async def explain_business_context(self, control: ControlContext) -> str:
        return await self._client.explain_business_context(control)

    async def suggest_remediation(self, control: ControlContext) -> str:
        return await self._client.suggest_remediation(control)

    async def generate_control_content(self, control: ControlContext) -> GeneratedControlContent:
        """Generate both the business context and the remediation guidance.

        Args:
            control: The control and its latest result.

        Returns:
            GeneratedControlContent with both texts.
        """
        logger.info(f"Generating AI content for control {control.control_id}")
        business_context = await self.explain_business_context(control)
        remediation = await self.suggest_remediation(control)
        return GeneratedControlContent(
            ai_business_context=business_context,
            ai_remediation_guidance=remediation,
        )


def get_llm_client() -> LLMClient:
    """Get an LLM client instance.

    This is a convenience function for dependency injection in FastAPI.

    Returns:
        An LLMClient instance configured based on application settings.
    """
    return LLMClient()
