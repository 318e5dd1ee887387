"""Command-line entry points for the policy RAG pipeline.

- rag-init-db: create the PostgreSQL tables
- rag-ingest: register a text/markdown file as a document and embed it
- rag-search: rank stored chunks against a query
- rag-models: list the models served by Ollama
"""

import argparse
import asyncio
import sys
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.table import Table
from rich.text import Text

from policy_rag.core.config import AppConfig, load_config
from policy_rag.core.database import init_db
from policy_rag.pipeline.embeddings import ModelCatalog
from policy_rag.pipeline.models import Document, EmbeddingOutcome, EmbeddingStatus, ScoredRecord
from policy_rag.pipeline.service import build_pipeline

console = Console()

SNIPPET_CHARS = 160


def configure_logging(verbose: bool = False) -> None:
    """Send loguru output to stderr at INFO, or DEBUG when verbose."""
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO")


def _base_parser(description: str) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=description)
    parser.add_argument(
        "--config-path",
        type=str,
        default="./config/pipeline_config.yaml",
        help="Path to the pipeline configuration file.",
    )
    parser.add_argument(
        "--verbose", action="store_true", help="Log debug output."
    )
    return parser


def parse_ingest_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for ingesting one document."""
    parser = _base_parser("Embed a text or markdown file into the vector store.")
    parser.add_argument("path", type=str, help="File whose text is embedded.")
    parser.add_argument(
        "--document-id",
        type=str,
        default="",
        help="Document identifier. Defaults to the file name without suffix.",
    )
    parser.add_argument("--name", type=str, default="", help="Display name.")
    parser.add_argument(
        "--scope", type=str, default="", help="Corpus scope (organization id)."
    )
    parser.add_argument(
        "--type",
        type=str,
        default="other",
        choices=["policy", "procedure", "evidence", "other"],
        help="Document type.",
    )
    parser.add_argument("--model", type=str, default="", help="Embedding model.")
    return parser.parse_args(argv)


def parse_search_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for searching the corpus."""
    parser = _base_parser("Rank stored chunks against a natural-language query.")
    parser.add_argument("query", type=str, help="Question or search text.")
    parser.add_argument("--scope", type=str, default="", help="Corpus scope.")
    parser.add_argument("-k", type=int, default=None, help="Number of results.")
    return parser.parse_args(argv)


def _load(config_path: str) -> AppConfig:
    path = Path(config_path)
    if not path.exists():
        logger.info("No config at {}, using defaults", path)
        return load_config(None)
    return load_config(path)


def print_outcome(outcome: EmbeddingOutcome) -> None:
    """Render an embedding run's outcome."""
    style = "bold green" if outcome.status is EmbeddingStatus.COMPLETED else "bold red"
    line = Text(f"{outcome.document_id}: {outcome.status.value}", style=style)
    line.append(
        f"  ({outcome.succeeded}/{outcome.total_chunks} chunks, model {outcome.model})",
        style="dim",
    )
    console.print(line)
    if outcome.degraded:
        console.print(f"[yellow]{outcome.failed} chunks failed to embed[/yellow]")
    if outcome.error is not None:
        console.print(f"[red]{outcome.error}[/red]")


def print_results(query: str, results: list[ScoredRecord]) -> None:
    """Render ranked search results as a table."""
    if not results:
        console.print(f"[dim]No results for[/dim] {query!r}")
        return
    table = Table(title=f"Results for {query!r}")
    table.add_column("#", justify="right")
    table.add_column("Score", justify="right")
    table.add_column("Document")
    table.add_column("Chunk", justify="right")
    table.add_column("Text")
    for rank, result in enumerate(results, start=1):
        text = result.record.text
        if len(text) > SNIPPET_CHARS:
            text = text[:SNIPPET_CHARS] + "…"
        table.add_row(
            str(rank),
            f"{result.score:.4f}",
            result.record.document_id,
            str(result.record.chunk_index),
            text,
        )
    console.print(table)


def print_models(catalog: ModelCatalog) -> None:
    """Render detected models and capabilities."""
    if not catalog.available:
        console.print("[red]Ollama is not reachable or serves no models[/red]")
        return
    table = Table(title="Ollama models")
    table.add_column("Model")
    table.add_column("Family")
    table.add_column("Parameters")
    table.add_column("Quantization")
    table.add_column("Embedding")
    for model in catalog.models:
        table.add_row(
            model.name,
            model.family,
            model.parameter_size,
            model.quantization_level,
            "yes" if model.name in catalog.embedding_models else "",
        )
    console.print(table)


async def _ingest(args: argparse.Namespace) -> int:
    config = _load(args.config_path)
    path = Path(args.path)
    text = path.read_text(encoding="utf-8")
    document_id = args.document_id or path.stem

    pipeline = build_pipeline(config)
    await pipeline.documents.add(
        Document(
            document_id=document_id,
            name=args.name or path.name,
            organization_id=args.scope or config.retrieval.default_scope,
            type=args.type,
            content=text,
        )
    )
    logger.info("Embedding {} as document {}", path, document_id)
    outcome = await pipeline.embed_document(document_id, text, args.model or None)
    print_outcome(outcome)
    return 0 if outcome.status is EmbeddingStatus.COMPLETED else 1


async def _search(args: argparse.Namespace) -> int:
    config = _load(args.config_path)
    pipeline = build_pipeline(config)
    results = await pipeline.search(args.query, args.scope or None, args.k)
    print_results(args.query, results)
    return 0


async def _models(args: argparse.Namespace) -> int:
    config = _load(args.config_path)
    catalog = await build_pipeline(config).detect_models()
    print_models(catalog)
    return 0 if catalog.available else 1


def ingest_main() -> None:
    """Synchronous entry point for the rag-ingest CLI command."""
    load_dotenv()
    args = parse_ingest_args()
    configure_logging(args.verbose)
    sys.exit(asyncio.run(_ingest(args)))


def search_main() -> None:
    """Synchronous entry point for the rag-search CLI command."""
    load_dotenv()
    args = parse_search_args()
    configure_logging(args.verbose)
    sys.exit(asyncio.run(_search(args)))


def models_main() -> None:
    """Synchronous entry point for the rag-models CLI command."""
    load_dotenv()
    args = _base_parser("List the models served by Ollama.").parse_args()
    configure_logging(args.verbose)
    sys.exit(asyncio.run(_models(args)))


def init_db_main() -> None:
    """Synchronous entry point for the rag-init-db CLI command."""
    load_dotenv()
    configure_logging()
    logger.info("Initializing database...")
    asyncio.run(init_db())
    logger.info("Done.")
