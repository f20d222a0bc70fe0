# etk_core.py
from __future__ import annotations

import os
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from openai import OpenAI


# --- errors -------------------------------------------------------------------

class ToolkitError(Exception):
    """Base class for every error the toolkit raises on purpose."""


class ExtractionError(ToolkitError):
    """The input book could not be opened or read."""


class ClientSetupError(ToolkitError):
    """The generation service client could not be created."""


class RequestError(ToolkitError):
    """One attempt for one unit failed; the unit may be resubmitted."""


class OversizedRequestError(RequestError):
    def __init__(self, tokens: int, ceiling: int):
        super().__init__(f"request exceeds maximum token limit ({tokens:,} > {ceiling:,} tokens)")
        self.tokens = tokens
        self.ceiling = ceiling


class ServiceError(RequestError):
    """The call to the generation service failed."""


class EmptyResponseError(RequestError):
    """The call succeeded but returned no usable text."""


class PersistenceError(ToolkitError):
    """A successful response could not be written; fatal for the run."""


class AssemblyError(ToolkitError):
    """The output book could not be built."""


class RetriesExhaustedError(ToolkitError):
    def __init__(self, identifier: str, attempts: int, last_error: Optional[BaseException]):
        super().__init__(f"{identifier}: gave up after {attempts} attempt(s): {last_error}")
        self.identifier = identifier
        self.attempts = attempts
        self.last_error = last_error


# --- data model ---------------------------------------------------------------

@dataclass(frozen=True)
class Unit:
    """One chapter of the source book. `context` is fixed when the unit is built."""
    identifier: str
    content: str
    ordinal: int
    context: str = ""


@dataclass
class Result:
    identifier: str
    unit: Unit
    attempt: int = 1
    response: Optional[str] = None
    error: Optional[RequestError] = None
    tokens: int = 0
    duration: float = 0.0
    dispatched: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and self.response is not None


# --- generation service -------------------------------------------------------

class GenerationClient:
    """
    Thin wrapper over an OpenAI-compatible chat endpoint.

    One `generate` call is one request; retries are the pipeline's job, so
    the SDK's own retry loop is disabled. Safe to share across threads.
    """

    def __init__(
        self,
        *,
        model: str,
        api_key: str,
        instruction: str,
        base_url: Optional[str] = None,
        temperature: float = 0.3,
        top_p: float = 0.8,
        timeout: float = 300.0,
        verbose: bool = False,
    ):
        try:
            self.client = OpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0)
        except Exception as e:
            raise ClientSetupError(f"error creating client: {e}") from e
        self.model = model
        self.instruction = instruction
        self.temperature = temperature
        self.top_p = top_p
        self.verbose = verbose

    def generate(self, request_text: str) -> str:
        """Return the first choice's text verbatim."""
        try:
            resp = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": self.instruction},
                    {"role": "user", "content": request_text},
                ],
                temperature=self.temperature,
                top_p=self.top_p,
            )
        except Exception as e:
            raise ServiceError(f"error generating content: {e}") from e

        msg = resp.choices[0].message if resp and resp.choices else None
        text = getattr(msg, "content", None) if msg else None
        if not text:
            if self.verbose:
                try:
                    raw = resp.model_dump_json()
                except Exception:
                    raw = ""
                sys.stderr.write(f"[debug] chat returned empty text; raw:\n{raw}\n")
            raise EmptyResponseError("no response generated")
        return text

    def close(self) -> None:
        self.client.close()


Generate = Callable[[str], str]


def execute_request(generate: Generate, result: Result, request_text: str) -> Result:
    """
    Run one attempt and fill in response/error and elapsed time.
    Any exception from `generate` ends up on the Result, never propagates.
    """
    start = time.monotonic()
    try:
        text = generate(request_text)
        if not text:
            raise EmptyResponseError("no response generated")
        result.response = text
    except RequestError as e:
        result.error = e
    except Exception as e:
        result.error = ServiceError(f"error generating content: {e}")
    result.duration = time.monotonic() - start
    result.dispatched = True
    return result


# --- persistence --------------------------------------------------------------

def output_path(directory: Path, identifier: str) -> Path:
    """Where a unit's output lives; identifiers may not point outside `directory`."""
    base = Path(directory).resolve()
    target = (base / identifier).resolve()
    if target == base or base not in target.parents:
        raise PersistenceError(f"output path for {identifier!r} escapes {directory}")
    return Path(directory) / identifier


def write_unit_output(directory: Path, identifier: str, text: str) -> Path:
    """Write one unit's response; the file holds only the response text."""
    path = output_path(directory, identifier)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".part")
        tmp.write_text(text, encoding="utf-8")
        os.replace(tmp, path)
    except OSError as e:
        raise PersistenceError(f"failed to write {path}: {e}") from e
    return path
