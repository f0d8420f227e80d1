"""Example showing how to start a governance workflow and follow its steps."""

import asyncio

from govflow import StartWorkflowOptions, WorkflowTracker, load_config


async def main():
    config = load_config()

    async with WorkflowTracker(config) as tracker:

        def on_started(task_id):
            print("Workflow started:", task_id)

            # Step-level progress for the detail view
            tracker.subscriptions.on_step_progress(
                task_id,
                lambda step_id, progress, processed, total: print(
                    f"  {step_id}: {progress}% ({processed}/{total})"
                ),
            )

        def on_error(message):
            print("Workflow stream failed:", message)

        started = await tracker.start_workflow(
            StartWorkflowOptions(on_success=on_started, on_error=on_error)
        )
        if not started:
            return

        await tracker.wait_closed()
        for execution in tracker.store.list_executions():
            print(execution.task_id, execution.status.value, f"{execution.progress}%")


if __name__ == "__main__":
    asyncio.run(main())
