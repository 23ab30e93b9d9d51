"""
Chart image -> monthly counts, via Gemini.

Backs the vision collaborator endpoint: the image is downloaded, sent to
the model with the month-label vocabulary, and the model's JSON reply is
repaired if truncated and restricted to the requested labels.
"""

import json
import re
from typing import List, Optional, Tuple

import httpx

from .config import ZzapConfig
from .enrichment import VisionSummary, normalize_vision_stats

VISION_SYSTEM_INSTRUCTION = "Верни строго JSON без пояснений, извлекая данные из картинки."
MAX_IMAGE_BYTES = 10 * 1024 * 1024


def build_vision_prompt(labels: List[str]) -> str:
    return (
        'На изображении график статистики ZZAP. Верни строго JSON вида {"summary":"…","stats":{}}. '
        f"В stats используй только эти метки: {', '.join(labels)}. Если число не видно, ставь 0."
    )


def repair_truncated_json(text: str) -> str:
    """
    Attempt to repair truncated or malformed JSON.

    Common issues:
    - Markdown code fences around the object
    - Truncated at end (missing closing braces)
    - Trailing commas
    """
    text = text.strip()

    if text.startswith('```'):
        lines = text.split('\n')[1:]
        if lines and lines[-1].strip() == '```':
            lines = lines[:-1]
        text = '\n'.join(lines)
    if '```' in text:
        text = text.split('```')[0]
    text = text.strip()

    if text.count('{') > text.count('}') or text.count('[') > text.count(']'):
        lines = text.rstrip().split('\n')
        while lines:
            last_line = lines[-1].strip()
            # An odd number of quotes means the line was cut mid-string
            if last_line.count('"') % 2 != 0:
                lines.pop()
                continue
            break
        text = '\n'.join(lines).rstrip()
        if text.endswith(','):
            text = text[:-1]
        text += ']' * (text.count('[') - text.count(']'))
        text += '}' * (text.count('{') - text.count('}'))

    return re.sub(r',(\s*[}\]])', r'\1', text)


def parse_vision_reply(text: str, labels: List[str]) -> VisionSummary:
    """Model reply -> summary. Unparseable replies keep the text as summary and zero counts."""
    try:
        data = json.loads(repair_truncated_json(text or ""))
    except json.JSONDecodeError:
        data = None
    if not isinstance(data, dict):
        return VisionSummary(summary=(text or "").strip()[:500], stats=normalize_vision_stats({}, labels))
    summary = data.get("summary")
    return VisionSummary(
        summary=summary if isinstance(summary, str) else (text or "").strip()[:500],
        stats=normalize_vision_stats(data.get("stats"), labels),
    )


async def download_image(image_url: str, client: Optional[httpx.AsyncClient] = None) -> Tuple[bytes, str]:
    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=httpx.Timeout(30.0), follow_redirects=True)
    try:
        response = await client.get(image_url)
        response.raise_for_status()
        if len(response.content) > MAX_IMAGE_BYTES:
            raise ValueError(f"Image too large ({len(response.content)} bytes)")
        mime = response.headers.get("content-type", "image/webp").split(";")[0].strip() or "image/webp"
        return response.content, mime
    finally:
        if owns_client:
            await client.aclose()


class GeminiVision:
    def __init__(self, config: ZzapConfig, http_client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.http_client = http_client

    async def _generate(self, image_bytes: bytes, mime: str, labels: List[str]) -> str:
        from google import genai
        from google.genai import types

        client = genai.Client(
            api_key=self.config.gemini_api_key,
            http_options=types.HttpOptions(api_version='v1beta')
        )
        response = await client.aio.models.generate_content(
            model=self.config.vision_model,
            contents=[
                types.Part.from_bytes(data=image_bytes, mime_type=mime),
                build_vision_prompt(labels),
            ],
            config=types.GenerateContentConfig(
                system_instruction=VISION_SYSTEM_INSTRUCTION,
                temperature=0.1,
                max_output_tokens=8192,
            )
        )
        return (response.text or "").strip()

    async def summarize(self, image_url: str, labels: List[str]) -> Tuple[Optional[VisionSummary], Optional[str]]:
        if not self.config.gemini_api_key:
            return None, "GEMINI_API_KEY not set"
        try:
            image_bytes, mime = await download_image(image_url, self.http_client)
        except (httpx.HTTPError, ValueError) as e:
            return None, f"Image download error: {str(e)[:200]}"
        try:
            text = await self._generate(image_bytes, mime, labels)
        except Exception as e:
            return None, f"Gemini error: {str(e)[:200]}"
        print(f"[vision] Gemini reply: {text[:200]}")
        return parse_vision_reply(text, labels), None
