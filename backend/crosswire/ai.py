"""
AI flows - summarize text and extract file metadata with Gemini.

Each flow is a single request/response round trip:
  1. validate the input model (done by the caller constructing it)
  2. send a fixed instruction plus the payload to the model, asking for JSON
  3. validate the JSON against the output model

Any SDK, transport or schema failure is raised as AiFlowFailure. Nothing is
retried here; the user retries by asking again.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Any, TypeVar

import google.generativeai as genai
from pydantic import BaseModel, ValidationError

from .errors import AiFlowFailure
from .log import get_logger
from .schemas import (
    ExtractMetadataInput,
    ExtractMetadataOutput,
    SummarizeInput,
    SummarizeOutput,
)
from .settings import settings
from .utils import split_data_uri

logger = get_logger(__name__)

OutputT = TypeVar("OutputT", bound=BaseModel)

SUMMARIZE_PROMPT = """You are a helpful assistant. Produce a concise summary of the text below.

Respond with JSON only, in the form {{"summary": "<summary>"}}.

Text:
{text}"""

EXTRACT_METADATA_PROMPT = """You are an expert metadata extractor. You will receive a file and extract \
the most important metadata from it, such as software requirements, version numbers, author \
information, dependencies, creation/modification date, etc. Return the metadata in a concise and \
readable format. If the file carries no such metadata, say so in a short sentence instead.

Respond with JSON only, in the form {"metadata": "<metadata>"}."""


@lru_cache(maxsize=1)
def get_model():
    """Shared Gemini model configured for JSON output."""
    if not settings.gemini_api_key:
        raise AiFlowFailure("GEMINI_API_KEY is not configured")
    genai.configure(api_key=settings.gemini_api_key)
    logger.info("Initialized Gemini model: %s", settings.gemini_model)
    return genai.GenerativeModel(
        settings.gemini_model,
        generation_config={"response_mime_type": "application/json"},
    )


class AiFlowGateway:
    """The two AI flows behind fixed input/output schemas."""

    def __init__(self, model: Any = None):
        self._model = model

    def _get_model(self):
        if self._model is None:
            self._model = get_model()
        return self._model

    def _run(self, flow: str, contents: list, output: type[OutputT]) -> OutputT:
        try:
            response = self._get_model().generate_content(contents)
            raw = response.text
        except AiFlowFailure:
            raise
        except Exception as exc:
            logger.warning("%s: model call failed: %s", flow, exc)
            raise AiFlowFailure(f"{flow}: model call failed: {exc}") from exc

        try:
            return output.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning("%s: output did not match schema: %s", flow, exc)
            raise AiFlowFailure(f"{flow}: output did not match schema") from exc

    def summarize(self, payload: SummarizeInput) -> SummarizeOutput:
        prompt = SUMMARIZE_PROMPT.format(text=payload.text)
        return self._run("summarize", [prompt], SummarizeOutput)

    def extract_metadata(self, payload: ExtractMetadataInput) -> ExtractMetadataOutput:
        mime, data = split_data_uri(payload.file_data_uri)
        contents = [EXTRACT_METADATA_PROMPT, {"mime_type": mime, "data": data}]
        return self._run("extract_metadata", contents, ExtractMetadataOutput)
