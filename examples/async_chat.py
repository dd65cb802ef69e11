"""Ask follow-up questions from asyncio code.

Turns on one client are serialised, so the questions below are answered in
order within a single conversation. Pass ``--sources`` to also print the
search references Meta AI attached to each answer.
"""

from __future__ import annotations

import argparse
import asyncio
import logging

from re_metaai import AsyncMetaAI, MetaAIError

QUESTIONS = [
    "What is the tallest mountain in Europe?",
    "How high is it?",
    "Who first climbed it?",
]


async def ask_all(questions, fetch_sources: bool) -> None:
    async with AsyncMetaAI() as metaai:
        for question in questions:
            print(f"You> {question}")
            try:
                response = await metaai.prompt(question, fetch_sources=fetch_sources)
            except MetaAIError as exc:
                print(f"Error: {exc}")
                continue
            print(f"AI> {response.message}")
            for source in response.sources:
                print(f"  source: {source.get('title') or source.get('link')}")


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--sources", action="store_true", help="Fetch search references")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)
    asyncio.run(ask_all(QUESTIONS, args.sources))


if __name__ == "__main__":
    main()
