"""Example showing how to rebuild an execution from a SQLite message log."""

import asyncio
import sys

from govflow import WorkflowTracker, get_repository, load_config
from govflow.summary import summarize


async def main():
    task_id = sys.argv[1]
    config = load_config()
    repository = get_repository("sqlite://govflow.db")

    async with WorkflowTracker(config, repository=repository) as tracker:
        execution = await tracker.restore_execution(task_id)
        if execution is None:
            print("No messages recorded for", task_id)
            return
        print(summarize(execution).model_dump_json(indent=2))


if __name__ == "__main__":
    asyncio.run(main())
