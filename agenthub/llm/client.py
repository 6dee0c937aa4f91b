"""Upstream generation provider client.

Architectural role:
    The external collaborator the dispatcher calls: `complete(request) -> dict` and
    `stream(request) -> iterator of token events`, both over OpenAI-compatible
    chat-completions HTTP endpoints.

Model invocation flow:
    `service.build_payload` -> `ProviderClient.complete` / `ProviderClient.stream`
    -> parsed message or incremental deltas.

Retry behavior:
    None here. Each HTTP call is attempted once; the dispatcher owns the bounded
    retry and uses `UpstreamError.transient` to decide.

Failure handling model:
    Transport and protocol failures raise `UpstreamError` with a provider-labeled
    message that never contains URLs, keys or response bodies.

Token events:
    `{"type": "content", "content": "..."}` for answer text and
    `{"type": "reasoning", "content": "..."}` for provider reasoning deltas
    (`reasoning_content`, emitted by deep-thinking models).
"""

import json
import logging

import requests

from agenthub.errors import UpstreamError
from agenthub.llm.provider_config import PROVIDERS, load_key


logger = logging.getLogger(__name__)


def _is_transient_status(status_code):
    return status_code == 429 or (status_code is not None and status_code >= 500)


def _build_sanitized_http_error(provider_name: str, err: requests.exceptions.RequestException) -> UpstreamError:
    """Build a provider-labeled `UpstreamError` without exposing raw internals.

    Args:
        provider_name: Active provider label.
        err: Request exception instance.

    Returns:
        `UpstreamError` with optional status code and transient flag.
    """
    status_code = None
    if getattr(err, "response", None) is not None:
        status_code = getattr(err.response, "status_code", None)

    label = str(provider_name or "provider").upper()
    transient = isinstance(
        err, (requests.exceptions.ConnectionError, requests.exceptions.Timeout)
    ) or _is_transient_status(status_code)

    if status_code:
        message = f"{label} HTTP ERROR ({status_code})"
    else:
        message = f"{label} HTTP ERROR"

    return UpstreamError(
        message,
        provider=provider_name,
        status_code_upstream=status_code,
        transient=transient,
    )


def _malformed(provider_name):
    label = str(provider_name or "provider").upper()
    return UpstreamError(f"{label} MALFORMED RESPONSE", provider=provider_name)


def extract_delta(data):
    """Extract `(content, reasoning)` deltas from one streamed JSON chunk.

    Handles the common OpenAI-compatible shapes: `choices[0].delta`,
    `choices[0].message`, `choices[0].text` and a bare `message`.
    """
    content = None
    reasoning = None

    if "choices" in data and data["choices"]:
        choice = data["choices"][0]

        if "delta" in choice and isinstance(choice["delta"], dict):
            content = choice["delta"].get("content")
            reasoning = choice["delta"].get("reasoning_content")

        elif "message" in choice and isinstance(choice["message"], dict):
            content = choice["message"].get("content")
            reasoning = choice["message"].get("reasoning_content")

        elif "text" in choice:
            content = choice["text"]

    elif "message" in data and isinstance(data["message"], dict):
        content = data["message"].get("content")

    return content, reasoning


class StreamingCompletion:
    """Token-event iterator for one streaming request.

    `abort()` may be called from another thread while a `next()` is blocked in a
    socket read: it closes the live response, which ends that read.
    """

    def __init__(self):
        self.response = None
        self.aborted = False
        self._events = iter(())

    def attach(self, events):
        self._events = events

    def __iter__(self):
        return self

    def __next__(self):
        return next(self._events)

    def abort(self):
        self.aborted = True
        response = self.response
        if response is not None:
            response.close()

    def close(self):
        close = getattr(self._events, "close", None)
        if close is not None:
            close()
        if self.response is not None:
            self.response.close()


class ProviderClient:
    """HTTP client for one configured OpenAI-compatible provider.

    Args:
        provider: Key into `PROVIDERS`.
        timeout: Per-request timeout in seconds.
        session: Optional `requests.Session` (connection pooling, tests).
    """

    def __init__(self, provider="302ai", timeout=120, session=None):
        if provider not in PROVIDERS:
            raise ValueError(f"Unknown provider {provider!r}")
        self.provider = provider
        self.timeout = timeout
        self._config = PROVIDERS[provider]
        self._session = session or requests.Session()

    @property
    def url(self):
        return self._config["url"]

    def _headers(self):
        headers = {
            "Content-Type": "application/json"
        }

        key_file = self._config["key_file"]
        if key_file:
            api_key = load_key(key_file)
            if not api_key:
                raise UpstreamError(
                    f"{self.provider.upper()} API KEY NOT CONFIGURED",
                    provider=self.provider,
                )
            headers["Authorization"] = f"Bearer {api_key}"

        return headers

    def complete(self, request: dict) -> dict:
        """Run one non-streaming completion.

        Args:
            request: Payload from `service.build_payload` (`stream` forced off).

        Returns:
            Dict with `content`, `reasoning` (or `None`), `usage` (or `None`) and
            the provider-reported `model`.

        Raises:
            UpstreamError: Network, HTTP status or response-shape failures.
        """
        headers = self._headers()
        payload = dict(request, stream=False)

        try:
            response = self._session.post(
                self.url,
                headers=headers,
                json=payload,
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.RequestException as err:
            raise _build_sanitized_http_error(self.provider, err) from err
        except ValueError as err:
            raise _malformed(self.provider) from err

        try:
            message = data["choices"][0]["message"]
            content = message["content"]
        except (KeyError, IndexError, TypeError) as err:
            raise _malformed(self.provider) from err

        if not isinstance(content, str):
            raise _malformed(self.provider)

        return {
            "content": content.strip(),
            "reasoning": message.get("reasoning_content") or None,
            "usage": data.get("usage"),
            "model": data.get("model"),
        }

    def stream(self, request: dict):
        """Open a streaming completion.

        The HTTP request is sent on the first `next()`. Closing the returned
        `StreamingCompletion` closes the underlying response, so the upstream
        connection is released on every exit path.

        Returns:
            `StreamingCompletion` iterating token events.

        Raises:
            UpstreamError: From inside iteration, on transport or in-band errors.
        """
        completion = StreamingCompletion()
        completion.attach(self._stream_events(request, completion))
        return completion

    def _stream_events(self, request, completion):
        headers = self._headers()
        payload = dict(request, stream=True)

        try:
            with self._session.post(
                self.url,
                headers=headers,
                json=payload,
                stream=True,
                timeout=self.timeout,
            ) as response:

                completion.response = response
                if completion.aborted:
                    return

                response.raise_for_status()
                response.encoding = "utf-8"

                for line in response.iter_lines(decode_unicode=True):

                    if not line:
                        continue

                    if line.startswith("data: "):
                        line = line[6:]

                    if line.strip() == "[DONE]":
                        break

                    try:
                        data = json.loads(line)
                    except ValueError:
                        logger.debug("Skipping non-JSON stream line from %s", self.provider)
                        continue

                    if isinstance(data, dict) and data.get("error"):
                        raise UpstreamError(
                            f"{self.provider.upper()} STREAM ERROR",
                            provider=self.provider,
                        )

                    content, reasoning = extract_delta(data)

                    if reasoning:
                        yield {"type": "reasoning", "content": reasoning}
                    if content:
                        yield {"type": "content", "content": content}

        except requests.exceptions.RequestException as err:
            raise _build_sanitized_http_error(self.provider, err) from err
