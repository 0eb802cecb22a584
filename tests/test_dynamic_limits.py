import unittest

from application.services.dynamic_limits import (
    HeuristicTokenCounter,
    LimitBounds,
    LimitConfig,
    QueryType,
    analyze_query_complexity,
    calculate_limits,
    detect_query_type,
    estimate_tokens,
)
from domain.entities import QueryComplexity, TokenBudget
from domain.interfaces import TokenCounter


class TestQueryAnalysis(unittest.TestCase):
    def test_detect_query_type(self):
        self.assertEqual(detect_query_type("How to install hnswlib on Windows"), QueryType.PROCEDURAL)
        self.assertEqual(detect_query_type("Who founded Rome?"), QueryType.FACTUAL)
        self.assertEqual(detect_query_type("Why is the sky blue"), QueryType.CONCEPTUAL)
        self.assertEqual(detect_query_type("solar versus wind for homes"), QueryType.EXPLORATORY)
        self.assertEqual(detect_query_type("banana bread"), QueryType.UNKNOWN)

    def test_short_factual_query_is_simple(self):
        analysis = analyze_query_complexity("Who founded Rome?")

        self.assertEqual(analysis.complexity, QueryComplexity.SIMPLE)
        self.assertEqual(analysis.keywords, ["founded", "rome"])

    def test_long_exploratory_query_is_complex(self):
        analysis = analyze_query_complexity(
            "Compare the environmental impact of solar, wind, hydro and nuclear energy "
            "production across European countries"
        )

        self.assertEqual(analysis.query_type, QueryType.EXPLORATORY)
        self.assertEqual(analysis.complexity, QueryComplexity.COMPLEX)
        self.assertLessEqual(analysis.complexity_score, 1.0)

    def test_procedural_query_is_moderate(self):
        analysis = analyze_query_complexity("How to configure uvicorn workers")

        self.assertEqual(analysis.complexity, QueryComplexity.MODERATE)

    def test_estimate_tokens(self):
        self.assertEqual(estimate_tokens(""), 0)
        self.assertEqual(estimate_tokens("abc"), 1)
        self.assertEqual(estimate_tokens("x" * 401), 101)

    def test_estimate_tokens_with_counter(self):
        class WordCounter(TokenCounter):
            def count(self, text):
                return len(text.split())

        self.assertEqual(estimate_tokens("solar panel prices", WordCounter()), 3)
        self.assertEqual(estimate_tokens("", WordCounter()), 0)
        self.assertEqual(HeuristicTokenCounter().count("x" * 401), 101)


class TestCalculateLimits(unittest.TestCase):
    def test_small_budget_falls_back_to_minimums(self):
        limits = calculate_limits(TokenBudget.compute(350), QueryComplexity.MODERATE)

        self.assertEqual((limits.document_chunks, limits.web_results), (3, 2))

    def test_complexity_scales_limits(self):
        budget = TokenBudget.compute(12000, 4000)

        simple = calculate_limits(budget, QueryComplexity.SIMPLE)
        moderate = calculate_limits(budget, QueryComplexity.MODERATE)
        complex_ = calculate_limits(budget, QueryComplexity.COMPLEX)

        self.assertEqual((simple.document_chunks, simple.web_results), (9, 6))
        self.assertEqual((moderate.document_chunks, moderate.web_results), (13, 9))
        self.assertEqual((complex_.document_chunks, complex_.web_results), (17, 10))

    def test_exhausted_budget_uses_minimums(self):
        budget = TokenBudget.compute(1000, 4000)

        self.assertEqual(budget.remaining_for_context, 0)
        with self.assertLogs("application.services.dynamic_limits", level="WARNING") as logs:
            limits = calculate_limits(budget, QueryComplexity.COMPLEX)
        self.assertIn("Token budget exhausted", logs.output[0])
        self.assertEqual((limits.document_chunks, limits.web_results), (3, 2))

    def test_large_budget_is_capped(self):
        limits = calculate_limits(TokenBudget.compute(1_000_000), QueryComplexity.COMPLEX)

        self.assertEqual((limits.document_chunks, limits.web_results), (20, 10))

    def test_invalid_bounds(self):
        config = LimitConfig(bounds=LimitBounds(min_documents=5, max_documents=2))

        with self.assertRaises(ValueError):
            calculate_limits(TokenBudget.compute(8000), QueryComplexity.MODERATE, config)


if __name__ == "__main__":
    unittest.main()
