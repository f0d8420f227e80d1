"""Named pipeline presets.

Executions are seeded from a preset only when the configuration asks for one;
otherwise their steps are discovered from the stream.
"""

from __future__ import annotations

from typing import Dict, List

from .models import StepDefinition

GOVERNANCE_PIPELINE: List[StepDefinition] = [
    StepDefinition(
        id="data-cleaning",
        title="Data cleansing",
        description="Strip invalid, special and transitional characters before loading into the ODS.",
    ),
    StepDefinition(
        id="data-deduplication",
        title="Deduplication",
        description="Collapse records whose primary keys are fully or partially identical.",
    ),
    StepDefinition(
        id="type-conversion",
        title="Type conversion",
        description="Convert string fields to the types declared by the model.",
    ),
    StepDefinition(
        id="standard-mapping",
        title="Standard dictionary mapping",
        description="Map source dictionaries onto the standard dictionary.",
        is_automatic=False,
    ),
    StepDefinition(
        id="empi-assignment",
        title="EMPI assignment",
        description="Issue a unique master patient index per patient.",
    ),
    StepDefinition(
        id="emoi-assignment",
        title="EMOI assignment",
        description="Issue a unique encounter index for examinations and lab tests.",
    ),
    StepDefinition(
        id="data-normalization",
        title="Normalization",
        description="Normalize values and formats to the national data standards.",
    ),
    StepDefinition(
        id="orphan-removal",
        title="Orphan removal",
        description="Drop records that cannot be linked to any master table.",
        is_automatic=False,
    ),
    StepDefinition(
        id="data-desensitization",
        title="Masking",
        description="Mask sensitive fields such as names, ID numbers and phone numbers.",
        is_automatic=False,
    ),
]


PIPELINE_PRESETS: Dict[str, List[StepDefinition]] = {"governance": GOVERNANCE_PIPELINE}
