"""
Explanation Module
AI match explanations behind a budget gate and circuit breaker, with
deterministic template fallback.
"""
