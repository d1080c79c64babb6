#!/usr/bin/env python3
"""
Scriptable stdio language server used by the integration tests.

Behaviour is keyed on the name of the symbol a prepareCallHierarchy request
points at, read from the text sent with didOpen:

- ``empty_*``    prepareCallHierarchy answers null
- ``slow_*``     prepareCallHierarchy is never answered
- ``late_*``     the answer is held back until the next request is answered
- ``error_*``    prepareCallHierarchy answers with an internal error
- ``crash_*``    the process exits with code 3 without answering
- ``truncate_*`` a frame announcing more bytes than it carries is written,
                 then stdout is closed
- anything else  one item carrying a ``data`` token; incomingCalls returns two
                 callers and outgoingCalls one callee, or an InvalidParams
                 error when the token did not come back unchanged

Command line flags:
    --no-initialize   never answer initialize
    --exit-on-start   exit immediately with code 2
"""

import json
import os
import re
import sys

IDENTIFIER = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


class FakeServer:
    def __init__(self, answer_initialize: bool = True):
        self.answer_initialize = answer_initialize
        self.documents: dict[str, list[str]] = {}
        self.deferred: list[dict] = []
        self.next_server_request_id = 1000
        self.stdin = sys.stdin.buffer
        self.stdout = sys.stdout.buffer

    # Framing

    def read_message(self) -> dict | None:
        length = None
        while True:
            line = self.stdin.readline()
            if not line:
                return None
            line = line.strip()
            if not line:
                if length is None:
                    continue
                break
            name, _, value = line.decode("ascii").partition(":")
            if name.strip().lower() == "content-length":
                length = int(value.strip())
        body = self.stdin.read(length)
        return json.loads(body.decode("utf-8"))

    def write(self, content: dict) -> None:
        body = json.dumps(content).encode("utf-8")
        self.stdout.write(f"Content-Length: {len(body)}\r\n\r\n".encode("ascii") + body)
        self.stdout.flush()

    def reply(self, request: dict, result) -> None:
        self.write({"jsonrpc": "2.0", "id": request["id"], "result": result})
        self.flush_deferred()

    def reply_error(self, request: dict, code: int, message: str, data=None) -> None:
        error = {"code": code, "message": message}
        if data is not None:
            error["data"] = data
        self.write({"jsonrpc": "2.0", "id": request["id"], "error": error})
        self.flush_deferred()

    def flush_deferred(self) -> None:
        pending, self.deferred = self.deferred, []
        for content in pending:
            self.write(content)

    # Behaviour

    def symbol_at(self, uri: str, line: int, character: int) -> str:
        lines = self.documents.get(uri, [])
        if line >= len(lines):
            return ""
        for match in IDENTIFIER.finditer(lines[line]):
            if match.start() <= character < match.end():
                return match.group(0)
        return ""

    def make_item(self, uri: str, name: str, line: int, character: int) -> dict:
        position = {"line": line, "character": character}
        end = {"line": line, "character": character + len(name)}
        return {
            "name": name,
            "kind": 12,
            "uri": uri,
            "range": {"start": position, "end": end},
            "selectionRange": {"start": position, "end": end},
            "data": {"token": f"{uri}#{line}:{character}"},
        }

    def handle_prepare(self, request: dict) -> None:
        params = request["params"]
        uri = params["textDocument"]["uri"]
        position = params["position"]
        name = self.symbol_at(uri, position["line"], position["character"])

        if name.startswith("empty_"):
            self.reply(request, None)
        elif name.startswith("slow_"):
            return
        elif name.startswith("late_"):
            item = self.make_item(uri, name, position["line"], position["character"])
            self.deferred.append({"jsonrpc": "2.0", "id": request["id"], "result": [item]})
        elif name.startswith("error_"):
            self.reply_error(request, -32603, f"cannot prepare {name}", {"symbol": name})
        elif name.startswith("crash_"):
            sys.stderr.write(f"fatal: crashing on {name}\n")
            sys.stderr.flush()
            os._exit(3)
        elif name.startswith("truncate_"):
            self.stdout.write(b'Content-Length: 200\r\n\r\n{"jsonrpc": "2.0"')
            self.stdout.flush()
            self.stdout.close()
            os._exit(0)
        else:
            item = self.make_item(uri, name, position["line"], position["character"])
            self.reply(request, [item])

    def handle_calls(self, request: dict, count: int, key: str) -> None:
        item = request["params"]["item"]
        start = item["selectionRange"]["start"]
        expected = f"{item['uri']}#{start['line']}:{start['character']}"
        if item.get("data", {}).get("token") != expected:
            self.reply_error(request, -32602, "call hierarchy item data was not preserved")
            return
        calls = [{key: item, "fromRanges": [item["selectionRange"]]} for _ in range(count)]
        self.reply(request, calls)

    def send_server_request(self, method: str, params) -> None:
        self.write(
            {"jsonrpc": "2.0", "id": self.next_server_request_id, "method": method, "params": params}
        )
        self.next_server_request_id += 1

    def serve(self) -> int:
        while True:
            message = self.read_message()
            if message is None:
                return 1

            method = message.get("method")
            if method is None:
                # Answer to one of our own requests
                continue

            if method == "initialize":
                if self.answer_initialize:
                    self.reply(
                        message,
                        {
                            "capabilities": {"callHierarchyProvider": True, "textDocumentSync": 1},
                            "serverInfo": {"name": "fake-lsp", "version": "0.1"},
                        },
                    )
            elif method == "initialized":
                self.write(
                    {
                        "jsonrpc": "2.0",
                        "method": "window/logMessage",
                        "params": {"type": 3, "message": "fake server ready"},
                    }
                )
                self.send_server_request("window/workDoneProgress/create", {"token": "index"})
                self.send_server_request(
                    "workspace/configuration", {"items": [{"section": "fake"}]}
                )
            elif method == "textDocument/didOpen":
                document = message["params"]["textDocument"]
                self.documents[document["uri"]] = document["text"].splitlines()
            elif method == "textDocument/didClose":
                self.documents.pop(message["params"]["textDocument"]["uri"], None)
            elif method == "textDocument/prepareCallHierarchy":
                self.handle_prepare(message)
            elif method == "callHierarchy/incomingCalls":
                self.handle_calls(message, 2, "from")
            elif method == "callHierarchy/outgoingCalls":
                self.handle_calls(message, 1, "to")
            elif method == "shutdown":
                self.reply(message, None)
            elif method == "exit":
                return 0
            elif "id" in message:
                self.reply_error(message, -32601, f"Method not found: {method}")


def main() -> int:
    args = sys.argv[1:]
    if "--exit-on-start" in args:
        return 2
    return FakeServer(answer_initialize="--no-initialize" not in args).serve()


if __name__ == "__main__":
    sys.exit(main())
