import asyncio
import base64
import json
import os
import re
from typing import Any, Dict, List, Optional

import requests
from dotenv import load_dotenv
from loguru import logger

from .errors import APIRequestError, ConfigurationError, GenerationFailed, LocateFailed
from .models import GeneratedPage, NormalizedBox, UploadedPhoto, is_data_url
from .prompt_manager import PromptManager

_JSON_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)
_JSON_ARRAY_RE = re.compile(r"\[[^\[\]]*\]", re.DOTALL)
_LIST_LINE_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(.+?)\s*$")


class APIClient:
    """Gemini REST client implementing the generate / locate contract.

    ``generate_page`` raises :class:`GenerationFailed` on any remote problem.
    ``locate_target`` returns a :class:`NormalizedBox`, ``None`` when the model
    says the hero is not in the picture, and raises :class:`LocateFailed` on
    transport or parse errors.
    """

    def __init__(self, api_settings: Dict[str, Any], prompt_manager: PromptManager, api_key: Optional[str] = None):
        """Initialize the API client with the ``api`` configuration section."""
        # Load environment variables
        load_dotenv()

        # Load model configuration from environment variables
        self.model = os.getenv('GEMINI_MODEL', 'gemini-2.5-flash-image')
        self.fallback_model = os.getenv('GEMINI_FALLBACK_MODEL') or None
        self.vision_model = os.getenv('GEMINI_VISION_MODEL', 'gemini-2.5-flash')

        # Load debug settings from environment variables
        self.debug_enable_prompt = os.getenv('DEBUG_ENABLE_PROMPT', 'true').lower() == 'true'
        self.debug_enable_response = os.getenv('DEBUG_ENABLE_RESPONSE', 'true').lower() == 'true'

        self.timeout = api_settings.get('timeout', 120)
        self.temperature = api_settings.get('temperature', 0.8)
        self.locate_temperature = api_settings.get('locate_temperature', 0.1)

        self.prompt_manager = prompt_manager
        self.api_key = self._initialize_api_key(api_key)

    def _initialize_api_key(self, api_key: Optional[str]) -> str:
        """Initialize and validate the API key."""
        api_key = api_key or os.getenv("GEMINI_API_KEY")

        if not api_key:
            raise ConfigurationError("API key not found. Please set it as GEMINI_API_KEY environment variable.")

        if not isinstance(api_key, str) or len(api_key) < 10:
            raise ConfigurationError("API key appears to be invalid. Please check your API key format.")

        if not api_key.startswith("AI") and not (len(api_key) > 30):
            logger.warning("API key doesn't match typical Google Gemini API key format. This might cause authentication issues.")

        return api_key

    def get_api_url(self, model_name: Optional[str] = None) -> str:
        """Get the API URL for the specified model."""
        model = model_name or self.model
        return f"https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

    # --- Transport --- #

    def make_request(self, url: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Make an API request with proper error handling."""
        if self.debug_enable_prompt and data.get('contents'):
            self._log_prompt_debug(data)

        headers = {
            "Content-Type": "application/json",
            "x-goog-api-key": self.api_key
        }

        try:
            response = requests.post(url, headers=headers, json=data, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.error(f"Request failed: {str(e)}")
            raise APIRequestError(f"API request failed: {str(e)}") from e

        if response.status_code != 200:
            self._handle_error_response(response)

        try:
            response_json = response.json()
        except ValueError as e:
            raise APIRequestError("API returned a response that is not valid JSON", response.status_code) from e

        if not isinstance(response_json, dict):
            raise APIRequestError(f"API returned an unexpected response body: {type(response_json).__name__}", response.status_code)

        if self.debug_enable_response:
            self._log_response_debug(response_json)

        return response_json

    def _log_prompt_debug(self, data: Dict[str, Any]) -> None:
        """Log prompt parts without dumping inline image payloads."""
        for i, part in enumerate(data['contents'][0].get('parts', [])):
            if 'text' in part:
                logger.debug(f"PROMPT TEXT PART {i}:\n{part['text']}")
            elif 'inlineData' in part:
                logger.debug(f"PROMPT PART {i}: [INLINE DATA - {part['inlineData']['mimeType']}]")

    def _log_response_debug(self, response_json: Dict[str, Any]) -> None:
        """Log the shape of the response."""
        candidates = response_json.get('candidates')
        if not candidates:
            logger.warning("No candidates found in response")
            return

        for idx, candidate in enumerate(candidates):
            parts = candidate.get('content', {}).get('parts', [])
            logger.debug(f"Candidate {idx + 1}: finishReason={candidate.get('finishReason')}, parts={len(parts)}")
            for part_idx, part in enumerate(parts):
                if 'text' in part:
                    text_preview = part['text'][:100] + "..." if len(part['text']) > 100 else part['text']
                    logger.debug(f"  Part {part_idx + 1} text: {text_preview}")
                elif 'inlineData' in part:
                    mime_type = part['inlineData'].get('mimeType', 'unknown')
                    data_length = len(part['inlineData'].get('data', ''))
                    logger.debug(f"  Part {part_idx + 1} inline data: {mime_type}, length: {data_length}")

    def _handle_error_response(self, response: requests.Response) -> None:
        """Raise APIRequestError carrying the most specific message available."""
        error_msg = f"API request failed with status code {response.status_code}"
        if response.status_code == 403:
            error_msg = f"{error_msg}: Authentication failed. Please verify your API key has the correct permissions for this API and model."
        try:
            error_json = response.json()
            if isinstance(error_json, dict) and 'error' in error_json:
                error_msg = f"API request failed with status code {response.status_code}: {error_json['error']['message']}"
        except (ValueError, KeyError, TypeError):
            if response.text:
                error_msg = f"{error_msg}: {response.text}"

        logger.error(error_msg)
        raise APIRequestError(error_msg, response.status_code)

    # --- Request Parts --- #

    @staticmethod
    def _inline_part(mime_type: str, data: str) -> Dict[str, Any]:
        return {"inlineData": {"mimeType": mime_type, "data": data}}

    def _image_part_from_reference(self, image_reference: str) -> Dict[str, Any]:
        """Turn a page image reference (data URL or http URL) into an inline part."""
        if is_data_url(image_reference):
            photo = UploadedPhoto.from_data_url(image_reference)
            return self._inline_part(photo.mime_type, photo.data)

        response = requests.get(image_reference, timeout=self.timeout)
        response.raise_for_status()
        mime_type = response.headers.get('Content-Type', 'image/png').split(';')[0]
        return self._inline_part(mime_type, base64.b64encode(response.content).decode('ascii'))

    # --- Generation --- #

    def _extract_page_from_response(self, response: Dict[str, Any]) -> Optional[GeneratedPage]:
        """Pull the first image and any quest items out of a generation response."""
        image_url = None
        texts = []
        for candidate in response.get('candidates', []):
            for part in candidate.get('content', {}).get('parts', []):
                if 'text' in part:
                    texts.append(part['text'])
                inline = part.get('inlineData')
                if image_url is None and inline and inline.get('mimeType', '').startswith('image/'):
                    image_data = inline.get('data')
                    if image_data and isinstance(image_data, str):
                        image_url = f"data:{inline['mimeType']};base64,{image_data}"
                    else:
                        logger.warning(f"Found image part but data is empty. MimeType: {inline.get('mimeType')}")

        if image_url is None:
            return None

        return GeneratedPage(image_url=image_url, quest_items=tuple(parse_quest_items("\n".join(texts))))

    @staticmethod
    def _describe_missing_image(response: Dict[str, Any]) -> str:
        block_reason = response.get('promptFeedback', {}).get('blockReason')
        if block_reason:
            return f"Request was blocked by the model: {block_reason}"
        for candidate in response.get('candidates', []):
            finish_reason = candidate.get('finishReason')
            if finish_reason and finish_reason != 'STOP':
                return f"The model did not return an image (finish reason: {finish_reason})"
        return "The model did not return an image"

    def _generate_page_sync(self, photo: UploadedPhoto, prompt_text: str) -> GeneratedPage:
        data = {
            "contents": [{
                "role": "user",
                "parts": [
                    self._inline_part(photo.mime_type, photo.data),
                    {"text": prompt_text},
                ]
            }],
            "generationConfig": {
                "temperature": self.temperature,
                "responseModalities": ["TEXT", "IMAGE"]
            }
        }

        try:
            response = self.make_request(self.get_api_url(self.model), data)
            page = self._extract_page_from_response(response)
            if page:
                logger.info(f"Generated page image using model: {self.model}")
                return page

            reason = self._describe_missing_image(response)
            if not self.fallback_model:
                raise GenerationFailed(reason)

            logger.warning(f"Primary model ({self.model}) returned no image. Trying fallback: {self.fallback_model}")
            response = self.make_request(self.get_api_url(self.fallback_model), data)
            page = self._extract_page_from_response(response)
            if page:
                logger.info(f"Generated page image using fallback model: {self.fallback_model}")
                return page
            raise GenerationFailed(self._describe_missing_image(response))

        except APIRequestError as e:
            raise GenerationFailed(str(e)) from e
        except (AttributeError, TypeError, KeyError) as e:
            raise GenerationFailed(f"Malformed generation response: {e}") from e

    async def generate_page(self, photo: UploadedPhoto, prompt_text: str) -> GeneratedPage:
        """Generate one page image showing the hidden hero."""
        logger.info(f"Requesting page generation ({len(prompt_text)} prompt chars)")
        return await asyncio.to_thread(self._generate_page_sync, photo, prompt_text)

    # --- Localization --- #

    def _locate_target_sync(self, photo: UploadedPhoto, page_image: str) -> Optional[NormalizedBox]:
        try:
            page_part = self._image_part_from_reference(page_image)
        except (ValueError, requests.exceptions.RequestException) as e:
            raise LocateFailed(f"Could not load page image: {e}") from e

        data = {
            "contents": [{
                "role": "user",
                "parts": [
                    self._inline_part(photo.mime_type, photo.data),
                    page_part,
                    {"text": self.prompt_manager.build_locate_prompt()},
                ]
            }],
            "generationConfig": {
                "temperature": self.locate_temperature,
                "responseMimeType": "application/json"
            }
        }

        try:
            response = self.make_request(self.get_api_url(self.vision_model), data)
            texts = [
                part['text']
                for candidate in response.get('candidates', [])
                for part in candidate.get('content', {}).get('parts', [])
                if 'text' in part
            ]
            return parse_locate_response("\n".join(texts))
        except APIRequestError as e:
            raise LocateFailed(str(e)) from e
        except (AttributeError, TypeError, KeyError) as e:
            raise LocateFailed(f"Malformed locate response: {e}") from e

    async def locate_target(self, photo: UploadedPhoto, page_image: str) -> Optional[NormalizedBox]:
        """Ask the vision model where the hero is hidden in ``page_image``."""
        return await asyncio.to_thread(self._locate_target_sync, photo, page_image)


def _strip_json_fence(text: str) -> str:
    match = _JSON_FENCE_RE.search(text)
    return match.group(1).strip() if match else text.strip()


def parse_locate_response(text: str) -> Optional[NormalizedBox]:
    """
    Parse the vision model's reply into a box.

    Accepted shapes: ``{"found": bool, "box_2d": [...]}``, a bare 4-number list,
    or a list of such objects (first one wins). Empty text, ``null``,
    ``found: false`` and an empty box all mean "not found" and yield ``None``.

    Raises:
        LocateFailed: For unparsable text or a box that violates the 0..1000 bounds.
    """
    body = _strip_json_fence(text or "")
    if not body:
        return None

    try:
        payload = json.loads(body)
    except ValueError as e:
        raise LocateFailed(f"Could not parse locate response: {e}") from e

    if isinstance(payload, list) and payload and isinstance(payload[0], dict):
        payload = payload[0]

    if isinstance(payload, dict):
        if payload.get('found') is False:
            return None
        coords = payload.get('box_2d', payload.get('box'))
    else:
        coords = payload

    if coords is None or coords == []:
        return None

    if not isinstance(coords, list):
        raise LocateFailed(f"Unexpected box format: {coords!r}")

    try:
        return NormalizedBox.from_sequence(coords)
    except (TypeError, ValueError) as e:
        raise LocateFailed(f"Invalid box: {e}") from e


def parse_quest_items(text: str) -> List[str]:
    """Extract the findable-item list from the generation reply text."""
    if not text or not text.strip():
        return []

    for candidate in (_strip_json_fence(text), *_JSON_ARRAY_RE.findall(text)):
        try:
            items = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(items, list) and all(isinstance(item, str) for item in items):
            return [item.strip() for item in items if item.strip()]

    # Fall back to bulleted or numbered lines
    items = []
    for line in text.splitlines():
        match = _LIST_LINE_RE.match(line)
        if match:
            items.append(match.group(1).strip('"').strip())
    return [item for item in items if item]
