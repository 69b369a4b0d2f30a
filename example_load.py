#!/usr/bin/env python3
"""Example: Initialize retrieval and query the corpus."""

import asyncio
import os
import sys
from langchain_community.embeddings import OllamaEmbeddings

from kb_retrieval import Initializer, RetrievalError, Retriever, build_sources, format_context
from kb_retrieval.config import Settings, configure_logging
from kb_retrieval.embedding import LangChainEmbeddingSource
from kb_retrieval.errors import user_action


def print_progress(progress):
    print(f"  [{progress.percent:5.1f}%] {progress.substate.value}")


async def run(settings, source):
    initializer = Initializer.from_settings(settings, source)

    print("Initializing retrieval...")
    try:
        context = await initializer.initialize(on_progress=print_progress)
    except RetrievalError as e:
        print(f"Error: {e.message} ({user_action(e.kind)})", file=sys.stderr)
        sys.exit(1)

    manifest = context.manifest
    print("✓ Ready")
    print(f"  - Build hash:  {manifest.build_hash}")
    print(f"  - Chunk count: {manifest.stats.total_chunks}")
    print(f"  - Model:       {manifest.model.name} ({manifest.dimensions} dims)")
    print()

    retriever = Retriever(context, settings.fusion)

    print("=" * 60)
    print("Enter queries (or 'quit' to exit)")
    print("=" * 60)
    print()

    try:
        while True:
            query = input("Query: ").strip()
            if not query or query.lower() in ("quit", "exit", "q"):
                break

            print()
            try:
                chunks = await retriever.retrieve(query)
            except RetrievalError as e:
                print(f"{e.message}", file=sys.stderr)
                print()
                continue

            for rank, source_info in enumerate(build_sources(chunks), start=1):
                label = source_info["title"]
                if source_info["section"]:
                    label += f" > {source_info['section']}"
                print(f"[{rank}] Score: {source_info['score']:.5f}  {label}  {source_info['url']}")
            print()
            if os.getenv("SHOW_CONTEXT"):
                print(format_context(chunks))
                print()
    finally:
        await initializer.reset()


def main():
    settings = Settings()
    configure_logging(settings.log_level)

    embed_model = os.getenv("EMBED_MODEL", "all-minilm")
    ollama_base_url = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
    dimensions = int(os.getenv("EMBED_DIMENSIONS", "384"))

    if not os.path.exists(settings.artifact_config_path):
        print(f"Error: Artifact config not found: {settings.artifact_config_path}")
        print("Run example_build.py first or set KB_RETRIEVAL_ARTIFACT_CONFIG_PATH")
        sys.exit(1)

    print("=" * 60)
    print("Hybrid Retrieval Example")
    print("=" * 60)
    print(f"Artifact config: {settings.artifact_config_path}")
    print(f"Cache directory: {settings.cache_dir}")
    print(f"Embedding model: {embed_model}")
    print(f"Ollama base URL: {ollama_base_url}")
    print()

    embeddings = OllamaEmbeddings(
        model=embed_model,
        base_url=ollama_base_url,
    )
    source = LangChainEmbeddingSource(embeddings, dimensions=dimensions)

    asyncio.run(run(settings, source))
    print("Goodbye!")


if __name__ == "__main__":
    main()
