"""
Example demonstrating streamed completion with prefix caching.

The model is loaded through the process-wide model cache, a context is built
over it and two prompts sharing a prefix are completed; the second one reuses
the cached prefix.
"""

import logging

from genctl_lite import CompletionParams, Context, ContextParams, generate_stream, load_model

logging.basicConfig(level=logging.INFO)

print("Loading model...")
model = load_model("Qwen/Qwen2.5-0.5B")

params = CompletionParams(
    temperature=0.7,
    max_tokens=48,
    stop_words=["\n\n"],
    enable_prefix_caching=True,
)

with Context(model, ContextParams(n_ctx=1024)) as context:
    for prompt in ["The capital of France is", "The capital of France is a city that"]:
        print(f"\nPrompt: {prompt!r}")
        stream = generate_stream(context, prompt, params)
        while True:
            try:
                piece = next(stream)
            except StopIteration as stop:
                result = stop.value
                break
            print(piece, end="", flush=True)
        print(f"\n  stop reason: {result.stop_reason.value}")
        print(f"  tokens: {result.n_tokens} generated, {result.n_reused} prompt tokens reused")

    stats = context.prefix_cache.get_stats()
    print("\nPrefix cache:")
    print(f"  Hit rate: {stats['hit_rate']:.2%}")
    print(f"  Tokens reused: {stats['tokens_reused']}")

model.close()
