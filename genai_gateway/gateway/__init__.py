"""GenAI request pipeline.

Issues generation requests to interchangeable LLM providers with:
  - Config Resolver (request < preset < defaults merge, model-family rules)
  - Cache Manager (deterministic keys, tags, hit/miss stats)
  - Fixed-window Rate Limiter (requests/min, tokens/min, requests/day)
  - Provider adapters (OpenAI, Grok, Claude, Gemini, mock)
  - Retry Controller (exponential backoff on retryable error kinds)
  - Normalizer and Cost Calculator (unified, cost-annotated response)
"""
