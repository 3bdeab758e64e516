"""
title: OpenAI Manifold
author: pipekit
version: 0.1.0
description: Exposes the models of an OpenAI-compatible API and proxies chat completions to it.
"""

import logging
from typing import Dict, List, Optional, Union

import aiohttp
from pydantic import BaseModel, Field

from pipekit.constants import HOST_NAME
from pipekit.contract import error_entry, strip_model_prefix
from pipekit.utils.sse import delta_content, iter_sse_payloads

logger = logging.getLogger(HOST_NAME)


class Pipe:
    type = "manifold"

    class Valves(BaseModel):
        NAME_PREFIX: str = Field(
            default="OPENAI/",
            description="Prefix to be added before model names.",
        )
        OPENAI_API_BASE_URL: str = Field(
            default="https://api.openai.com/v1",
            description="Base URL for accessing OpenAI API endpoints.",
        )
        OPENAI_API_KEY: str = Field(
            default="",
            description="API key for authenticating requests to the OpenAI API.",
        )
        MODEL_FILTER: str = Field(
            default="",
            description="Only list models whose id contains this text; empty lists all.",
        )
        REQUEST_TIMEOUT: float = Field(default=60.0, gt=0, description="Seconds to wait on the API.")

    def __init__(self):
        self.valves = self.Valves()

    def _headers(self, valves: "Pipe.Valves") -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {valves.OPENAI_API_KEY}",
            "Content-Type": "application/json",
        }

    def _timeout(self, valves: "Pipe.Valves", streaming: bool = False) -> aiohttp.ClientTimeout:
        if streaming:
            # a stream may legitimately outlive any total deadline
            return aiohttp.ClientTimeout(
                total=None,
                sock_connect=valves.REQUEST_TIMEOUT,
                sock_read=valves.REQUEST_TIMEOUT,
            )
        return aiohttp.ClientTimeout(total=valves.REQUEST_TIMEOUT)

    async def pipes(self) -> List[Dict[str, str]]:
        valves = self.valves
        if not valves.OPENAI_API_KEY:
            return [error_entry("API Key not provided.")]

        base_url = valves.OPENAI_API_BASE_URL.rstrip("/")
        try:
            async with aiohttp.ClientSession(timeout=self._timeout(valves)) as session:
                async with session.get(f"{base_url}/models", headers=self._headers(valves)) as response:
                    response.raise_for_status()
                    data = await response.json(content_type=None)
            return self.model_entries(data.get("data", []), valves)
        except Exception as e:
            logger.error(f"Error fetching models from {base_url}: {e}")
            return [error_entry("Error fetching models. Please check your API Key.")]

    def model_entries(self, models: List[dict], valves: "Pipe.Valves") -> List[Dict[str, str]]:
        """Turn the upstream model list into unique, prefixed entries.

        Upstream models sharing a display name get their id appended so the
        entries stay distinguishable in a model picker.
        """
        selected = []
        seen_ids = set()
        for model in models:
            model_id = model.get("id") if isinstance(model, dict) else None
            if not model_id or model_id in seen_ids:
                continue
            if valves.MODEL_FILTER and valves.MODEL_FILTER not in model_id:
                continue
            seen_ids.add(model_id)
            selected.append((model_id, model.get("name") or model_id))

        name_counts: Dict[str, int] = {}
        for _, name in selected:
            name_counts[name] = name_counts.get(name, 0) + 1

        entries = []
        for model_id, name in selected:
            if name_counts[name] > 1:
                name = f"{name} ({model_id})"
            entries.append({"id": model_id, "name": f"{valves.NAME_PREFIX}{name}"})
        return entries

    async def pipe(
        self, body: dict, __user__: Optional[dict] = None
    ) -> Union[str, dict, "DeltaStream"]:
        """Forward a chat completion request upstream.

        Returns the completion JSON, or for `stream: true` a DeltaStream of
        content deltas. The request is sent before returning, so transport
        errors come back as an "Error: ..." string in both modes. The
        stream reads a single upstream response and can be consumed once.
        """
        valves = self.valves
        stream = body.get("stream") is True
        payload = {**body, "model": strip_model_prefix(body.get("model", ""))}
        url = f"{valves.OPENAI_API_BASE_URL.rstrip('/')}/chat/completions"

        session: Optional[aiohttp.ClientSession] = aiohttp.ClientSession(
            timeout=self._timeout(valves, streaming=stream)
        )
        response = None
        try:
            response = await session.post(url, json=payload, headers=self._headers(valves))
            response.raise_for_status()
            if stream:
                deltas = DeltaStream(session, response)
                session = None  # owned by the stream from here on
                return deltas
            return await response.json(content_type=None)
        except Exception as e:
            logger.error(f"Error calling {url} for model {payload['model']}: {e}")
            return f"Error: {e}"
        finally:
            if session is not None:
                if response is not None:
                    response.release()
                await session.close()


class DeltaStream:
    """Content deltas read line by line from one streamed completion.

    Owns the session and response it is given. `aclose()` releases both
    whether or not iteration has started, and exhaustion closes them too.
    An interrupted upstream ends the stream with one "Error: ..." chunk.
    """

    def __init__(self, session: aiohttp.ClientSession, response: aiohttp.ClientResponse):
        self.session = session
        self.response = response
        self._pending: List[str] = []
        self._finished = False

    def __aiter__(self) -> "DeltaStream":
        return self

    async def __anext__(self) -> str:
        while not self._pending:
            if self._finished:
                await self.aclose()
                raise StopAsyncIteration
            try:
                raw_line = await self.response.content.readline()
            except aiohttp.ClientError as e:
                logger.error(f"Stream from upstream interrupted: {e}")
                self._finished = True
                return f"Error: {e}"
            if not raw_line:
                self._finished = True
                continue
            line = raw_line.decode("utf-8", "replace")
            for obj in iter_sse_payloads([line]):
                content = delta_content(obj)
                if content:
                    self._pending.append(content)
        return self._pending.pop(0)

    async def aclose(self):
        self._finished = True
        self._pending.clear()
        if self.session.closed:
            return
        self.response.release()
        await self.session.close()
