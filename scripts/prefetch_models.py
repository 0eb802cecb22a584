"""Download embedding and cross-encoder models into a local directory for offline use."""
from __future__ import annotations

import argparse
import os
from pathlib import Path

from sentence_transformers import CrossEncoder, SentenceTransformer

DEFAULT_EMBEDDING_MODELS = (
    "sentence-transformers/all-MiniLM-L6-v2",
    "sentence-transformers/all-mpnet-base-v2",
)
DEFAULT_CROSS_ENCODER_MODEL = "cross-encoder/ms-marco-MiniLM-L-6-v2"


def prefetch_embedding_model(model_name: str, output_dir: Path) -> Path:
    model = SentenceTransformer(model_name)
    target_dir = output_dir / model_name
    target_dir.parent.mkdir(parents=True, exist_ok=True)
    model.save(str(target_dir))
    return target_dir


def prefetch_cross_encoder(model_name: str, output_dir: Path) -> Path:
    model = CrossEncoder(model_name)
    target_dir = output_dir / model_name
    target_dir.parent.mkdir(parents=True, exist_ok=True)
    model.save(str(target_dir))
    return target_dir


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--output-dir",
        default=os.getenv("CONTEXTFUSION_MODELS_DIR", "models"),
        help="Directory for local models (default: $CONTEXTFUSION_MODELS_DIR or models)",
    )
    parser.add_argument(
        "--embedding-model",
        action="append",
        dest="embedding_models",
        help="Hugging Face id of an embedding model. May be given several times.",
    )
    parser.add_argument(
        "--cross-encoder-model",
        default=DEFAULT_CROSS_ENCODER_MODEL,
        help=f"Hugging Face id of the reranking cross-encoder (default: {DEFAULT_CROSS_ENCODER_MODEL})",
    )
    parser.add_argument(
        "--skip-cross-encoder",
        action="store_true",
        help="Do not download the cross-encoder.",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    output_dir = Path(args.output_dir).expanduser()
    embedding_models = tuple(args.embedding_models or DEFAULT_EMBEDDING_MODELS)

    print(f"Saving models to: {output_dir}")
    for model_name in embedding_models:
        saved_path = prefetch_embedding_model(model_name, output_dir)
        print(f"embedding: {model_name} -> {saved_path}")

    if not args.skip_cross_encoder:
        saved_path = prefetch_cross_encoder(args.cross_encoder_model, output_dir)
        print(f"cross-encoder: {args.cross_encoder_model} -> {saved_path}")


if __name__ == "__main__":
    main()
