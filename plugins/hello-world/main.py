"""Hello World plugin: a minimal mcphub worker."""

import os
from datetime import datetime, timezone

from mcphub.worker import WorkerApp

app = WorkerApp("hello-world", version="1.0.0")

GREETING = os.environ.get("GREETING", "Hello")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@app.tool(description="Say hello to someone")
def say_hello(name: str = "World") -> dict:
    return {"message": f"{GREETING}, {name}!", "timestamp": _now(), "plugin": app.name}


@app.tool(description="Echo a message back")
def echo(message: str) -> dict:
    return {"original": message, "echo": message, "length": len(message), "timestamp": _now()}


@app.resource("hello://greetings", description="Greetings in several languages", mime_type="application/json")
def greetings() -> dict:
    return {
        "greetings": ["Hello, World!", "Hi there!", "Good morning!", "Welcome!", "Greetings!"],
        "languages": {"en": "Hello", "es": "Hola", "fr": "Bonjour", "de": "Hallo", "it": "Ciao"},
    }


@app.prompt(description="Ask for a friendly greeting")
def greet_prompt(name: str, language: str = "en") -> str:
    return f"Write a short, friendly greeting for {name} in language '{language}'."


if __name__ == "__main__":
    app.run()
