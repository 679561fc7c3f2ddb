"""
OpenAI provider: chat completions for text generation and data analysis.

Responses may be requested as JSON (``response_format: "json"``); the
model's text is then parsed with ``extract_json``, which tolerates
markdown fences and surrounding prose.
"""

import json
import re
from typing import Any, Dict, List, Optional

import structlog

from core.exceptions import ConfigurationError
from integrations.base import IntegrationProvider

logger = structlog.get_logger(__name__)

ANALYSIS_PROMPTS = {
    "trend": "Analyze the following data for trends and patterns:\n\n{data}\n\n"
             "Provide insights on key trends, anomalies, and recommendations.",
    "performance": "Analyze the following performance data:\n\n{data}\n\n"
                   "Identify strengths, weaknesses, and areas for improvement.",
    "customer": "Analyze the following customer data:\n\n{data}\n\n"
                "Provide insights on customer behavior, satisfaction, and opportunities.",
    "default": "Analyze the following data:\n\n{data}\n\nProvide clear, actionable insights.",
}


# ─── JSON extraction ───────────────────────────────────────────

def extract_json(text: str) -> Any:
    """Extract JSON from a model response that may contain markdown or prose.

    Tries, in order: a direct parse, the first fenced code block, then the
    first bracket-balanced object or array.

    Raises:
        ValueError: If no JSON could be found
    """
    if not text or not text.strip():
        raise ValueError("Empty response")

    clean = text.strip()
    try:
        return json.loads(clean)
    except json.JSONDecodeError:
        pass

    fence = re.search(r"```(?:json|JSON)?\s*\n?(.*?)```", clean, re.DOTALL)
    if fence:
        try:
            return json.loads(fence.group(1).strip())
        except json.JSONDecodeError:
            pass

    for opener, closer in (("{", "}"), ("[", "]")):
        start = clean.find(opener)
        if start == -1:
            continue
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(clean)):
            c = clean[i]
            if escaped:
                escaped = False
                continue
            if c == "\\":
                escaped = True
                continue
            if c == '"':
                in_string = not in_string
                continue
            if in_string:
                continue
            if c == opener:
                depth += 1
            elif c == closer:
                depth -= 1
                if depth == 0:
                    try:
                        return json.loads(clean[start:i + 1])
                    except json.JSONDecodeError:
                        break

    raise ValueError(f"Could not extract JSON from response: {clean[:200]}")


def build_analysis_prompt(data: Any, analysis_type: str = "default") -> str:
    text = data if isinstance(data, str) else json.dumps(data, indent=2, default=str)
    template = ANALYSIS_PROMPTS.get(analysis_type or "default", ANALYSIS_PROMPTS["default"])
    return template.format(data=text)


class OpenAIProvider(IntegrationProvider):
    """Chat completion actions. Credentials: ``api_key`` (or ``apiKey``)."""

    platform = "openai"
    actions = ("generate_text", "generate_summary", "analyze_data")
    timeout_setting = "OPENAI_TIMEOUT"

    async def _complete(
        self,
        messages: List[Dict[str, str]],
        parameters: Dict[str, Any],
        temperature: float,
        max_tokens: Optional[int] = None,
    ) -> Dict[str, Any]:
        api_key = self.credentials.get("api_key") or self.credentials.get("apiKey")
        if not api_key:
            raise ConfigurationError("OpenAI API key not configured")

        payload: Dict[str, Any] = {
            "model": parameters.get("model") or self.settings.OPENAI_DEFAULT_MODEL,
            "messages": messages,
            "temperature": parameters.get("temperature", temperature),
        }
        max_tokens = parameters.get("max_tokens") or parameters.get("maxTokens") or max_tokens
        if max_tokens:
            payload["max_tokens"] = int(max_tokens)

        headers = {"Authorization": f"Bearer {api_key}"}
        if self.credentials.get("organization_id"):
            headers["OpenAI-Organization"] = self.credentials["organization_id"]

        data = await self.request(
            "POST",
            f"{self.settings.OPENAI_BASE_URL.rstrip('/')}/chat/completions",
            headers=headers,
            json=payload,
        )

        choices = (data.get("choices") or []) if isinstance(data, dict) else []
        content = choices[0].get("message", {}).get("content") if choices else None
        response: Any = content if content is not None else data
        if content is not None and parameters.get("response_format") == "json":
            response = extract_json(content)

        usage = data.get("usage") if isinstance(data, dict) else None
        logger.info("OpenAI completion", model=payload["model"], usage=usage)
        return {"success": True, "response": response, "usage": usage}

    async def generate_text(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        messages = parameters.get("messages")
        if not messages:
            prompt = parameters.get("prompt")
            if not prompt:
                raise ConfigurationError("generate_text requires prompt or messages")
            messages = []
            if parameters.get("system"):
                messages.append({"role": "system", "content": parameters["system"]})
            messages.append({"role": "user", "content": prompt})
        return await self._complete(messages, parameters, temperature=0.7, max_tokens=500)

    async def generate_summary(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        content = parameters.get("content")
        if content is None:
            raise ConfigurationError("generate_summary requires content")
        if not isinstance(content, str):
            content = json.dumps(content, default=str)
        messages = [
            {"role": "system", "content": "Summarize the following content clearly and concisely."},
            {"role": "user", "content": content},
        ]
        return await self._complete(messages, parameters, temperature=0.5, max_tokens=200)

    async def analyze_data(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        if parameters.get("data") is None:
            raise ConfigurationError("analyze_data requires data")
        messages = [
            {"role": "system", "content": "You are a data analyst. Provide clear, actionable insights."},
            {
                "role": "user",
                "content": build_analysis_prompt(
                    parameters["data"],
                    parameters.get("analysis_type") or parameters.get("analysisType"),
                ),
            },
        ]
        return await self._complete(messages, parameters, temperature=0.3)
