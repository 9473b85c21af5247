"""
Example: Namespaces, cross-agent recall, fork/merge and snapshots

Demonstrates:
1. Per-agent isolation within a project
2. Opting in to cross-agent retrieval
3. Forking a namespace for an experiment and merging it back
4. Exporting a namespace snapshot and importing it into a fresh engine

Runs without any model download: fragments carry their own embeddings.
"""

import asyncio

from hindsight import FragmentInput, HindsightConfig, MemoryEngine, RetrievalQuery

DIMENSION = 4


def vector(*values):
    return list(values) + [0.0] * (DIMENSION - len(values))


async def main():
    config = HindsightConfig(
        storage_type="memory",
        embedding_dimension=DIMENSION,
        similarity_threshold=0.5,
        cross_agent_threshold=0.8,
    )

    async with MemoryEngine(config) as engine:
        await engine.store(
            FragmentInput(
                content="Builder: webhook retries need exponential backoff",
                agent_id="builder",
                project_id="nova",
                embedding=vector(1.0, 0.1),
            )
        )
        await engine.store(
            FragmentInput(
                content="Reviewer: flag webhook handlers that retry in a tight loop",
                agent_id="reviewer",
                project_id="nova",
                embedding=vector(0.95, 0.2),
            )
        )

        query = RetrievalQuery(namespace="nova:builder", embedding=vector(1.0, 0.15))

        # === Isolation ===
        own = await engine.search(query)
        print(f"Builder only: {[s.fragment.content for s in own]}")

        # === Cross-agent ===
        shared = await engine.search(query.model_copy(update={"include_cross_agent": True}))
        print(f"With siblings: {[s.fragment.content for s in shared]}")

        # === Fork / merge ===
        fork = await engine.fork_namespace("nova:builder", "nova:builder-experiment")
        print(f"\nForked {fork.copied} fragments")
        await engine.store(
            FragmentInput(
                content="Experiment: jitter on backoff avoids thundering herds",
                agent_id="builder-experiment",
                project_id="nova",
                embedding=vector(0.9, 0.0, 0.4),
            )
        )
        merge = await engine.merge_namespaces("nova:builder-experiment", "nova:builder")
        print(f"Merged back: kept={merge.kept} discarded={merge.discarded}")

        # === Snapshots ===
        snapshot = await engine.export_snapshot(namespace="nova:builder")

    async with MemoryEngine(config) as restored:
        report = await restored.import_snapshot(text=snapshot)
        print(f"\nRestored {report.imported} fragments into a new engine")


if __name__ == "__main__":
    asyncio.run(main())
