#!/usr/bin/env python3
"""Example: Build corpus artifacts from content items."""

import os
import sys
from langchain_community.embeddings import OllamaEmbeddings

from kb_retrieval import build_kb
from kb_retrieval.builder import read_content_items
from kb_retrieval.config import ChunkingConfig


def main():
    # Configuration
    content_path = os.getenv("CONTENT_PATH", "./content.json")
    out_dir = os.getenv("OUT_DIR", "./kb")
    base_url = os.getenv("BASE_URL", "http://localhost:8000")
    embed_model = os.getenv("EMBED_MODEL", "all-minilm")
    ollama_base_url = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")

    target_tokens = int(os.getenv("TARGET_TOKENS", "256"))
    max_tokens = int(os.getenv("MAX_TOKENS", "512"))
    overlap_tokens = int(os.getenv("OVERLAP_TOKENS", "32"))
    batch_size = int(os.getenv("BATCH_SIZE", "32"))

    # Validate content file
    if not os.path.isfile(content_path):
        print(f"Error: Content file not found: {content_path}")
        print("Set CONTENT_PATH to a JSON or JSONL file of content items")
        sys.exit(1)

    print("=" * 60)
    print("Retrieval Corpus Builder")
    print("=" * 60)
    print(f"Content file:     {content_path}")
    print(f"Output directory: {out_dir}")
    print(f"Public base URL:  {base_url}")
    print(f"Embedding model:  {embed_model}")
    print(f"Ollama base URL:  {ollama_base_url}")
    print(f"Target tokens:    {target_tokens}")
    print(f"Max tokens:       {max_tokens}")
    print(f"Overlap tokens:   {overlap_tokens}")
    print(f"Batch size:       {batch_size}")
    print("=" * 60)
    print()

    embeddings = OllamaEmbeddings(
        model=embed_model,
        base_url=ollama_base_url,
    )

    try:
        items = read_content_items(content_path)
        manifest = build_kb(
            items=items,
            out_dir=out_dir,
            embeddings_client=embeddings,
            embed_model=embed_model,
            chunking=ChunkingConfig(
                target_tokens=target_tokens,
                max_tokens=max_tokens,
                overlap_tokens=overlap_tokens,
            ),
            batch_size=batch_size,
            base_url=base_url,
        )

        print()
        print("=" * 60)
        print("Build completed successfully!")
        print("=" * 60)
        print(f"Build hash:    {manifest.build_hash}")
        print(f"Chunk count:   {manifest.stats.total_chunks}")
        print(f"Total tokens:  {manifest.stats.total_tokens}")
        print(f"Avg tokens:    {manifest.stats.avg_tokens_per_chunk}")
        print(f"Dimensions:    {manifest.dimensions}")
        print()
        print(f"Artifacts available at: {out_dir}/current")
        print(f"Serve that directory at {base_url} for clients to fetch it")
        print("=" * 60)

    except Exception as e:
        print(f"\nError during corpus build: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
