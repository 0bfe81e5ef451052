import json
from dataclasses import dataclass, field
from typing import Any

from loguru import logger
from openai import AsyncOpenAI, OpenAIError

from nichefeed.config import settings
from nichefeed.exceptions import AIContractError

STRICT_JSON_PREFIX = "IMPORTANT: RETURN STRICT JSON ONLY, NO MARKDOWN, NO EXTRA TEXT.\n"


@dataclass
class AICompletion:
    parsed: dict | None = None
    text: str = ""
    usage: dict | None = None
    response_id: str | None = None
    attempts: int = 0
    error: str | None = None


def extract_json_object(text: str) -> dict | None:
    """Parse the substring from the first '{' to the last '}'."""
    text = text or ""
    first = text.find("{")
    last = text.rfind("}")
    if first < 0 or last <= first:
        return None
    try:
        parsed = json.loads(text[first:last + 1])
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def check_required_lists(parsed: dict, required_lists: tuple[str, ...]):
    missing = [name for name in required_lists if not isinstance(parsed.get(name), list)]
    if missing:
        raise AIContractError(f"missing list fields: {', '.join(missing)}", {"missing": missing})


class AIProcessor:
    def __init__(self, client: AsyncOpenAI | None = None, model: str | None = None, temperature: float | None = None):
        if client is None and settings.OPENAI_API_KEY:
            client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY)
        self.client = client
        self.model = model or settings.OPENAI_MODEL
        self.temperature = settings.OPENAI_TEMPERATURE if temperature is None else temperature

    @property
    def configured(self) -> bool:
        return self.client is not None

    async def _call(self, prompt: str, payload: dict, result: AICompletion) -> dict | None:
        result.attempts += 1
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": prompt},
                    {"role": "user", "content": "INPUT_JSON:\n" + json.dumps(payload, ensure_ascii=False)},
                ],
                temperature=self.temperature,
                response_format={"type": "json_object"},
            )
        except OpenAIError as e:
            logger.error(f"❌ OpenAI API Error: {e}")
            result.error = str(e)
            return None

        result.text = response.choices[0].message.content or ""
        result.response_id = response.id
        result.usage = response.usage.model_dump() if response.usage else None
        parsed = extract_json_object(result.text)
        if parsed is None:
            result.error = "response is not a JSON object"
        return parsed

    async def complete_json(self, prompt: str, payload: dict, required_lists: tuple[str, ...] = ()) -> AICompletion:
        """
        Ask for a JSON object. A response that does not parse, or misses one
        of the required list fields, gets exactly one retry with a stricter
        instruction. Unconfigured client returns an empty completion.
        """
        result = AICompletion()
        if not self.configured:
            result.error = "AI service not configured"
            return result

        for prefix in ("", STRICT_JSON_PREFIX):
            parsed = await self._call(prefix + prompt, payload, result)
            if parsed is None:
                continue
            try:
                check_required_lists(parsed, required_lists)
            except AIContractError as e:
                result.error = e.message
                continue
            result.parsed = parsed
            result.error = None
            logger.info(f"✨ AI completion parsed after {result.attempts} attempt(s)")
            return result
        return result


def usage_summary(completion: AICompletion) -> dict[str, Any]:
    return {
        "attempts": completion.attempts,
        "responseId": completion.response_id,
        "usage": completion.usage,
        "error": completion.error,
    }
