"""
title: Echo
author: pipekit
version: 0.1.0
description: Replies with the latest user message.
"""

from typing import Optional

from pydantic import BaseModel, Field

from pipekit.events import emit_status
from pipekit.utils.text import last_user_message


class Pipe:
    class Valves(BaseModel):
        PREFIX: str = Field(default="", description="Text prepended to every reply.")

    def __init__(self):
        self.valves = self.Valves()

    async def pipe(self, body: dict, __event_emitter__=None) -> str:
        message = last_user_message(body.get("messages", []))
        if message is None:
            return ""
        await emit_status(__event_emitter__, "Echoed", done=True)
        return f"{self.valves.PREFIX}{message}"
