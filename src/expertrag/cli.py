"""Operator CLI for the expertrag pipeline."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Sequence
from uuid import uuid4

from expertrag.config import Settings, get_settings
from expertrag.embeddings.service import EmbeddingConfig, OpenAIEmbeddingClient
from expertrag.errors import ExpertRagError
from expertrag.metrics.observability import bind_correlation_id, clear_correlation_id, configure_logging
from expertrag.retrieval.service import QdrantSearchClient
from expertrag.schemas import ExpertChatResponse, MultiExpertAnalysisResult, VentureAgentAnalysisResult
from expertrag.services.context import ContextAssembler, ContextConfig
from expertrag.services.pipeline import StructuredGenerator
from expertrag.services.providers import ProviderSelector

SCHEMAS = {
    "analysis": VentureAgentAnalysisResult,
    "multi-expert": MultiExpertAnalysisResult,
    "chat": ExpertChatResponse,
}


def _load_json(path: Path) -> dict[str, Any]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a JSON object")
    return data


async def run_health(settings: Settings, collection: str | None) -> dict[str, Any]:
    searcher = QdrantSearchClient.from_settings(settings)
    try:
        healthy = await searcher.check_collection_health(collection)
        info = await searcher.get_collection_info(collection)
    finally:
        await searcher.aclose()
    return {"healthy": healthy, "collection": asdict(info)}


async def run_context(settings: Settings, data: dict[str, Any], collection: str | None) -> dict[str, Any]:
    searcher = QdrantSearchClient.from_settings(settings)
    embedder = OpenAIEmbeddingClient(EmbeddingConfig.from_settings(settings))
    assembler = ContextAssembler(embedder, searcher, ContextConfig.from_settings(settings))
    try:
        result = await assembler.analyze(data, collection or settings.qdrant_collection)
    finally:
        await embedder.aclose()
        await searcher.aclose()
    return {
        "chunks": [asdict(chunk) for chunk in result.chunks],
        "total_tokens": result.total_tokens,
        "processing_time_ms": result.processing_time_ms,
        "search_results": result.search_result_count,
        "context_relevant": assembler.is_relevant(result.chunks),
        "prompt_context": ContextAssembler.format_for_prompt(result.chunks),
    }


async def run_generate(
    settings: Settings,
    prompt: str,
    schema_name: str,
    model: str | None,
    data: dict[str, Any] | None,
    collection: str | None,
) -> dict[str, Any]:
    schema = SCHEMAS[schema_name]
    async with StructuredGenerator.from_settings(settings, with_context=data is not None) as generator:
        if schema_name == "multi-expert":
            generated = await generator.generate_multi_expert(prompt, model)
        elif schema_name == "chat":
            generated = await generator.generate_expert_reply(
                prompt,
                model,
                data=data,
                collection_name=collection,
            )
        elif data is not None:
            generated = await generator.generate_with_context(data, collection, prompt, schema, model)
        else:
            generated = await generator.generate(prompt, schema, model)
    return {
        "result": generated.result.model_dump(mode="json", by_alias=True, exclude_none=True),
        "attempts": generated.attempts,
        "model": generated.model,
        "rag": asdict(generated.rag) if generated.rag else None,
    }


def run_models(settings: Settings) -> dict[str, Any]:
    return {
        "default_model": settings.default_model,
        "models": [
            {"model": spec.model, "provider": spec.provider.value, "display_name": spec.display_name}
            for spec in ProviderSelector.available_models()
        ],
    }


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="expertrag", description="Knowledge-base grounded structured generation.")
    parser.add_argument("--request-id", type=str, default=None, help="Correlation id attached to every log line")
    commands = parser.add_subparsers(dest="command", required=True)

    health = commands.add_parser("health", help="Check that the vector collection is reachable and ready")
    health.add_argument("--collection", type=str, default=None, help="Collection to check")

    context = commands.add_parser("context", help="Assemble knowledge-base context for a JSON input")
    context.add_argument("--input", type=Path, required=True, help="JSON file with the structured request data")
    context.add_argument("--collection", type=str, default=None, help="Collection to search")

    generate = commands.add_parser("generate", help="Generate a validated structured result")
    generate.add_argument("--prompt-file", type=Path, required=True, help="Prompt template file")
    generate.add_argument("--model", type=str, default=None, help="Model identifier (defaults to settings)")
    generate.add_argument("--schema", choices=sorted(SCHEMAS), default="analysis", help="Result shape to validate")
    generate.add_argument("--input", type=Path, default=None, help="JSON file enabling knowledge-base context")
    generate.add_argument("--collection", type=str, default=None, help="Collection to search")

    commands.add_parser("models", help="List the models that can be selected")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None, settings: Settings | None = None) -> int:
    args = parse_args(argv if argv is not None else sys.argv[1:])
    settings = settings or get_settings()
    configure_logging()
    correlation_id = args.request_id or uuid4().hex
    bind_correlation_id(correlation_id)

    try:
        if args.command == "health":
            output = asyncio.run(run_health(settings, args.collection))
        elif args.command == "context":
            output = asyncio.run(run_context(settings, _load_json(args.input), args.collection))
        elif args.command == "generate":
            prompt = args.prompt_file.read_text(encoding="utf-8")
            data = _load_json(args.input) if args.input else None
            output = asyncio.run(
                run_generate(settings, prompt, args.schema, args.model, data, args.collection),
            )
        else:
            output = run_models(settings)
    except (ExpertRagError, OSError, ValueError) as exc:
        payload = {"error": str(exc), "type": type(exc).__name__, "correlation_id": correlation_id}
        print(json.dumps(payload), file=sys.stderr)
        return 1
    finally:
        clear_correlation_id()

    print(json.dumps(output, indent=2, default=str))
    if args.command == "health" and not output["healthy"]:
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    sys.exit(main())
