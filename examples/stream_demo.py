"""Minimal demonstration of a streamed reply."""

import asyncio

from assistant_stream.api.service import send_message


def show(snap):
    print("\r" + snap.content_text[-80:], end="", flush=True)


if __name__ == "__main__":
    question = "用三句话介绍一下你自己"
    result = asyncio.run(send_message(question, on_update=show))
    print()
    print("State:", result["state"])
    print("Conversation:", result["conversation_id"])
