from application.evaluation.metrics import (
    RerankReport,
    mean_abs_rank_delta,
    mean_top_score,
    mrr_at_k,
    precision_at_k,
    recall_at_k,
    rerank_report,
)

__all__ = [
    "precision_at_k",
    "recall_at_k",
    "mrr_at_k",
    "mean_abs_rank_delta",
    "mean_top_score",
    "RerankReport",
    "rerank_report",
]
