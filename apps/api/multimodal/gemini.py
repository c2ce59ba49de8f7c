import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import google.generativeai as genai

logger = logging.getLogger(__name__)

TRANSCRIPTION_PROMPT = """
You are analyzing a short-form social video.

Provide:
1. A complete word-for-word transcription of everything spoken.
2. The script components:
   - hook: the opening line that grabs attention
   - bridge: the transition from the hook into the main content
   - nugget: the core value or teaching point
   - callToAction: what the viewer is asked to do at the end
3. Content metadata (speaker name if identifiable, a brief description, relevant hashtags).
4. A brief description of the visual elements.

Return ONLY a JSON object with this shape:
{
  "transcript": "full transcript",
  "components": {
    "hook": "string",
    "bridge": "string",
    "nugget": "string",
    "callToAction": "string"
  },
  "contentMetadata": {
    "author": "string",
    "description": "string",
    "hashtags": ["string"]
  },
  "visualContext": "string"
}
"""


@dataclass(frozen=True)
class StagedFile:
    name: str
    uri: str
    mime_type: str
    state: str


def _state_name(file_obj) -> str:
    state = getattr(file_obj, "state", None)
    # The SDK exposes an enum with .name; older builds return a plain string.
    return str(getattr(state, "name", state) or "STATE_UNSPECIFIED").upper()


def _to_staged(file_obj) -> StagedFile:
    return StagedFile(
        name=file_obj.name,
        uri=getattr(file_obj, "uri", "") or "",
        mime_type=getattr(file_obj, "mime_type", "") or "video/mp4",
        state=_state_name(file_obj),
    )


def build_prompt(platform_hint: str) -> str:
    if platform_hint and platform_hint != "unknown":
        return f"{TRANSCRIPTION_PROMPT}\nThe video was published on {platform_hint}.\n"
    return TRANSCRIPTION_PROMPT


class GeminiFileBackend:
    """
    Gemini Files API staging plus one multimodal generation call.

    The SDK is synchronous, so every call is pushed to a worker thread.
    """

    def __init__(self, api_key: str, model_name: str = "gemini-2.0-flash"):
        self.api_key = api_key
        self.model_name = model_name
        genai.configure(api_key=api_key)

    async def upload(self, path: str, mime_type: str, display_name: Optional[str] = None) -> StagedFile:
        file_obj = await asyncio.to_thread(
            genai.upload_file,
            path,
            mime_type=mime_type,
            display_name=display_name,
        )
        staged = _to_staged(file_obj)
        logger.info("Staged %s as %s (%s)", path, staged.name, staged.state)
        return staged

    async def get_state(self, name: str) -> str:
        file_obj = await asyncio.to_thread(genai.get_file, name)
        return _state_name(file_obj)

    async def generate(self, staged: StagedFile, platform_hint: str) -> str:
        model = genai.GenerativeModel(self.model_name)
        file_obj = await asyncio.to_thread(genai.get_file, staged.name)
        response = await asyncio.to_thread(
            model.generate_content,
            [file_obj, build_prompt(platform_hint)],
        )
        try:
            return response.text or ""
        except ValueError:
            # .text raises when the candidate was blocked or carries no parts.
            logger.warning("Gemini returned no text for %s", staged.name)
            return ""

    async def delete(self, name: str) -> None:
        await asyncio.to_thread(genai.delete_file, name)
