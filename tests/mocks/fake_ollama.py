"""Fake Ollama server: /api/generate (plain and streamed) and /api/tags.

Run standalone: uvicorn tests.mocks.fake_ollama:app --port 11434
"""

import json

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse

app = FastAPI(title="Fake Ollama")

MODELS = ["llama2:latest", "mistral:7b"]
STREAM_TOKENS = ["Hello", " from", " Ollama"]
REPLY = "".join(STREAM_TOKENS)

requests_seen: list[dict] = []


@app.get("/")
async def root():
    return PlainTextResponse("Ollama is running")


@app.get("/api/tags")
async def tags():
    return {
        "models": [
            {"name": name, "model": name, "size": 3_825_819_519, "details": {"family": "llama"}}
            for name in MODELS
        ]
    }


@app.post("/api/generate")
async def generate(request: Request):
    body = await request.json()
    requests_seen.append({"path": "/api/generate", "body": body, "authorization": request.headers.get("authorization")})

    if body.get("model") == "missing":
        return JSONResponse({"error": f"model '{body['model']}' not found"}, status_code=404)

    if body.get("stream"):
        async def lines():
            for token in STREAM_TOKENS:
                yield json.dumps({"model": body["model"], "response": token, "done": False}) + "\n"
            if body.get("model") == "broken-stream":
                yield json.dumps({"error": "model runner crashed"}) + "\n"
                return
            yield json.dumps({"model": body["model"], "response": "", "done": True}) + "\n"

        return StreamingResponse(lines(), media_type="application/x-ndjson")

    return {"model": body["model"], "response": REPLY, "done": True}
