from manifold.affinity.index import AffinityEntry, AffinityIndex
from manifold.affinity.keys import FieldAccessor, extract_key, parse_key_path
from manifold.affinity.rules import AffinityRule, AffinityRuleTable

__all__ = [
    "AffinityEntry",
    "AffinityIndex",
    "AffinityRule",
    "AffinityRuleTable",
    "FieldAccessor",
    "extract_key",
    "parse_key_path",
]
