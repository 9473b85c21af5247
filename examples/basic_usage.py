"""
Example: Storing and retrieving agent memories with hindsight

Demonstrates:
1. Storing episodic, semantic and procedural fragments
2. Retrieving a token-budgeted prompt prefix for a new task
3. Reinforcing and pinning fragments
4. Running consolidation and reading its report

Install required dependencies:
    pip install hindsight-memory[embeddings-transformers]  # For E5
    pip install hindsight-memory[embeddings-openai]       # For OpenAI
"""

import asyncio
import logging
import os

from hindsight import FragmentInput, HindsightConfig, MemoryEngine, RetrievalQuery
from hindsight.models import EpisodicDetails, ProceduralDetails


def build_embedder():
    """Pick an embedding provider based on what is installed."""
    if os.getenv("OPENAI_API_KEY"):
        from hindsight.embeddings import OpenAIEmbedding

        return OpenAIEmbedding(model="text-embedding-3-small", dimensions=384)

    from hindsight.embeddings import E5Embedding

    return E5Embedding(model_name="intfloat/e5-small-v2", device="cpu")


async def main():
    logging.basicConfig(level=logging.INFO)

    config = HindsightConfig(
        storage_type="sqlite",
        storage_path="hindsight_demo.db",
        similarity_threshold=0.75,
        token_budget=500,
    )

    async with MemoryEngine(config, embedding=build_embedder()) as engine:
        # Store a few memories for the "builder" agent of project "nova"
        bug = await engine.store(
            FragmentInput(
                content="Token refresh raced with logout in auth/session.ts; fixed with a mutex.",
                agent_id="builder",
                project_id="nova",
                kind="episodic",
                outcome="positive",
                tags=["auth", "bugfix"],
                details=EpisodicDetails(decision="Serialize refresh and logout"),
            )
        )
        await engine.store(
            FragmentInput(
                content="The nova API uses JWT access tokens with a 15 minute lifetime.",
                agent_id="builder",
                project_id="nova",
                kind="semantic",
            )
        )
        deploy = await engine.store(
            FragmentInput(
                content="Deploy nova by running tests, building the image, then rolling the staging cluster.",
                agent_id="builder",
                project_id="nova",
                kind="procedural",
                details=ProceduralDetails(
                    trigger_pattern="deploying nova",
                    steps=["run tests", "build image", "roll staging"],
                ),
            )
        )
        print(f"Stored {bug.id} in {bug.namespace}")

        # Keep the deploy procedure around no matter how rarely it is used
        await engine.set_pinned(deploy.id)
        await engine.reinforce(bug.id)

        # Retrieve context for a new task
        result = await engine.retrieve(
            RetrievalQuery(namespace="nova:builder", text="users get logged out when tokens expire")
        )
        print("\n=== Prompt prefix ===")
        print(result.formatted_text or "(nothing relevant)")
        print(f"\n{len(result.fragments_used)} fragments, ~{result.tokens_used} tokens")

        # Periodic maintenance
        report = await engine.consolidate()
        print(
            f"\nConsolidation: merged={report.merged} decayed={report.decayed} "
            f"archived={report.archived} in {report.duration_ms:.1f}ms"
        )

        stats = await engine.get_stats()
        print(f"Total fragments: {stats.total_fragments} ({stats.by_kind})")


if __name__ == "__main__":
    asyncio.run(main())
