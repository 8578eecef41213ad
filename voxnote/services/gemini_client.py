from __future__ import annotations

import json

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions

from voxnote.services.errors import GeminiConfigurationError, GeminiRequestError


class GeminiClient:
    def __init__(self, api_key: str, model_name: str = "gemini-2.5-flash") -> None:
        self.api_key = api_key
        self.model_name = model_name
        self._configure_api()

    def _configure_api(self) -> None:
        if not self.api_key:
            raise GeminiConfigurationError("Missing Google API key.")
        genai.configure(api_key=self.api_key)

    def _serialize_prompt(self, user_prompt: str | dict[str, str | int | float | list | dict]) -> str:
        if isinstance(user_prompt, str):
            return user_prompt
        try:
            return json.dumps(user_prompt, indent=2, ensure_ascii=False)
        except TypeError:
            return str(user_prompt)

    def generate_content(
        self,
        user_prompt: str | dict[str, str | int | float | list | dict],
        system_instruction: str,
    ) -> str:
        model = genai.GenerativeModel(
            model_name=self.model_name,
            system_instruction=system_instruction,
        )

        payload = self._serialize_prompt(user_prompt)
        try:
            response = model.generate_content(payload)
            return response.text
        except google_exceptions.GoogleAPIError as api_error:
            raise GeminiRequestError(f"Gemini request failed: {api_error}") from api_error
        except ValueError as blocked:
            # response.text raises when the candidate was blocked or empty
            raise GeminiRequestError(f"Gemini returned no text: {blocked}") from blocked
