import json

from aiohttp import web

REQUESTS = web.AppKey("requests", list)

UPSTREAM_MODELS = [
    {"id": "gpt-4o", "name": "GPT-4o"},
    {"id": "gpt-4o-mini"},
    {"id": "gpt-4o", "name": "GPT-4o duplicate"},
    {"id": "text-embedding-3-small"},
]


def make_openai_app(models=None, api_key="sk-test", reply=("Hello", " there")):
    """Minimal OpenAI-compatible upstream recording every request"""
    app = web.Application()
    app[REQUESTS] = []
    models = UPSTREAM_MODELS if models is None else models

    def authorized(request):
        return request.headers.get("Authorization") == f"Bearer {api_key}"

    async def list_models(request):
        request.app[REQUESTS].append({"path": "models"})
        if not authorized(request):
            return web.json_response({"error": "invalid key"}, status=401)
        return web.json_response({"object": "list", "data": models})

    async def chat_completions(request):
        payload = await request.json()
        request.app[REQUESTS].append({"path": "chat", "payload": payload})
        if not authorized(request):
            return web.json_response({"error": "invalid key"}, status=401)

        if payload.get("stream"):
            response = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
            await response.prepare(request)
            await response.write(b'data: {"choices": [{"delta": {"role": "assistant"}}]}\n\n')
            for piece in reply:
                chunk = {"choices": [{"delta": {"content": piece}}]}
                await response.write(f"data: {json.dumps(chunk)}\n\n".encode("utf-8"))
            await response.write(b"data: [DONE]\n\n")
            await response.write_eof()
            return response

        return web.json_response(
            {
                "id": "chatcmpl-1",
                "model": payload["model"],
                "choices": [
                    {"message": {"role": "assistant", "content": "".join(reply)}}
                ],
            }
        )

    app.router.add_get("/v1/models", list_models)
    app.router.add_post("/v1/chat/completions", chat_completions)
    return app
