"""Well-behaved worker with tools that sleep, fail and crash on request."""

import asyncio
import os

from mcphub.worker import WorkerApp

app = WorkerApp("echo", version="1.0.0")


@app.tool(description="Return the arguments unchanged")
def echo(**arguments):
    return arguments


@app.tool(description="Answer after a delay")
async def slow(seconds: float = 1.0, tag: str = ""):
    await asyncio.sleep(seconds)
    return {"tag": tag, "slept": seconds}


@app.tool(description="Raise an error")
def fail(message: str = "boom"):
    raise ValueError(message)


@app.tool(description="Exit the process without answering")
def crash(code: int = 1):
    os._exit(code)


@app.tool(description="Send a notification, then answer")
def ping():
    app.notify("log", {"message": "pong"})
    return "pong"


@app.resource("echo://status", description="Static status document", mime_type="application/json")
def status():
    return {"ok": True}


@app.prompt(description="Greeting prompt")
def greeting(name: str):
    return f"Say hello to {name}"


if __name__ == "__main__":
    app.run()
