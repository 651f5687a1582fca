"""
Demo MCP tool provider over stdio.

Offers ``get-weather`` and ``calculate``. Protocol frames go to stdout,
one JSON object per line; logs go to stderr only.

Run with ``contextbridge demo-server`` or ``python -m contextbridge.demo.server``.
"""

import json
import logging
import sys
from typing import Any, Callable, Dict, Optional, TextIO

from contextbridge.demo.arith import ExpressionError, evaluate, format_number

logger = logging.getLogger("contextbridge.demo")

SERVER_INFO = {"name": "contextbridge-demo", "version": "1.0.0"}
PROTOCOL_VERSION = "2024-11-05"

TOOLS = [
    {
        "name": "get-weather",
        "description": "Get the current weather for a location",
        "inputSchema": {
            "type": "object",
            "properties": {
                "location": {"type": "string", "description": "The location to get weather for"},
            },
            "required": ["location"],
        },
    },
    {
        "name": "calculate",
        "description": "Perform a simple calculation",
        "inputSchema": {
            "type": "object",
            "properties": {
                "expression": {
                    "type": "string",
                    "description": "The mathematical expression to evaluate",
                },
            },
            "required": ["expression"],
        },
    },
]


def _text(text: str, is_error: bool = False) -> Dict[str, Any]:
    result: Dict[str, Any] = {"content": [{"type": "text", "text": text}]}
    if is_error:
        result["isError"] = True
    return result


def get_weather(arguments: Dict[str, Any]) -> Dict[str, Any]:
    # Canned answer; a real provider would call a weather API here.
    return _text(f"It's currently sunny and 72°F in {arguments['location']}")


def calculate(arguments: Dict[str, Any]) -> Dict[str, Any]:
    expression = arguments["expression"]
    try:
        value = evaluate(expression)
    except ExpressionError as exc:
        return _text(f"Error evaluating expression: {exc}", is_error=True)
    return _text(f"The result of {expression} is {format_number(value)}")


HANDLERS: Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
    "get-weather": get_weather,
    "calculate": calculate,
}


class RequestError(Exception):
    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


def handle(method: str, params: Dict[str, Any]) -> Dict[str, Any]:
    if method == "initialize":
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {"tools": {}},
            "serverInfo": SERVER_INFO,
        }
    if method == "tools/list":
        return {"tools": TOOLS}
    if method == "tools/call":
        name = params.get("name")
        handler = HANDLERS.get(name)
        if handler is None:
            raise RequestError(-32602, f"Unknown tool: {name}")
        arguments = params.get("arguments") or {}
        try:
            return handler(arguments)
        except KeyError as exc:
            raise RequestError(-32602, f"Missing argument: {exc.args[0]}")
        except Exception as exc:
            logger.exception("Tool %s failed", name)
            return _text(f"Tool {name} failed: {exc}", is_error=True)
    if method == "ping":
        return {}
    raise RequestError(-32601, f"Method not found: {method}")


def respond(message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Build the response frame for one incoming frame (None for notifications)."""
    method = message.get("method")
    if "id" not in message:
        logger.debug("notification %s", method)
        return None

    reply: Dict[str, Any] = {"jsonrpc": "2.0", "id": message["id"]}
    try:
        reply["result"] = handle(method, message.get("params") or {})
    except RequestError as exc:
        reply["error"] = {"code": exc.code, "message": exc.message}
    return reply


def serve(stdin: TextIO = sys.stdin, stdout: TextIO = sys.stdout) -> None:
    logger.info("Demo tool provider started on stdio")
    for line in stdin:
        line = line.strip()
        if not line:
            continue
        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            reply: Optional[Dict[str, Any]] = {
                "jsonrpc": "2.0",
                "id": None,
                "error": {"code": -32700, "message": "Parse error"},
            }
        else:
            if not isinstance(message, dict):
                continue
            reply = respond(message)
        if reply is not None:
            stdout.write(json.dumps(reply) + "\n")
            stdout.flush()
    logger.info("stdin closed, shutting down")


def main() -> None:
    logging.basicConfig(level=logging.INFO, stream=sys.stderr, format="%(levelname)s %(name)s: %(message)s")
    serve()


if __name__ == "__main__":
    main()
