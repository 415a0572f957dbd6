from typing import Dict, Mapping, Tuple

from skooladmin.core.schema import SCHEMAS, EntitySchema, get_schema


MUTATION_KINDS: Tuple[str, ...] = ("insert", "update", "delete")


def build_invalidation_graph(schemas: Mapping[str, EntitySchema]) -> Dict[str, Tuple[str, ...]]:
    """
    Mutating table T invalidates T itself plus every table U that declares a
    relation onto T, since U's queries can embed T's rows: students embed
    their fees (fees -> fees, students) and fee lists embed their student
    (students -> students, attendance, fees, grades).
    """
    graph: Dict[str, Tuple[str, ...]] = {}
    for table in schemas:
        prefixes = [table]
        for owner in schemas.values():
            if owner.table == table:
                continue
            if any(rel.target == table for rel in owner.relations):
                prefixes.append(owner.table)
        graph[table] = tuple(prefixes)
    return graph


INVALIDATION_GRAPH: Dict[str, Tuple[str, ...]] = build_invalidation_graph(SCHEMAS)


def invalidation_prefixes(table: str) -> Tuple[str, ...]:
    get_schema(table)
    return INVALIDATION_GRAPH[table]
