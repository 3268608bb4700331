"""Fact materialisation from JSON."""

from rulebridge.facts.base import MaterializedFact, PropertyBagFact
from rulebridge.facts.compiled import (
    CompiledFact,
    CompiledTypeCache,
    FactPopulationWarning,
    compile_fact_class,
    default_compiled_cache,
)
from rulebridge.facts.detect import (
    ChainedDetector,
    FieldNameDetector,
    KeyPatternDetector,
    TypeDetector,
)
from rulebridge.facts.materializer import AutoDetectResult, FactMaterializer, parse_json_array

__all__ = [
    "MaterializedFact",
    "PropertyBagFact",
    "CompiledFact",
    "CompiledTypeCache",
    "FactPopulationWarning",
    "compile_fact_class",
    "default_compiled_cache",
    "ChainedDetector",
    "FieldNameDetector",
    "KeyPatternDetector",
    "TypeDetector",
    "AutoDetectResult",
    "FactMaterializer",
    "parse_json_array",
]
