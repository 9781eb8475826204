"""
Item records and connection reasons for the similarity graph.

Library rows store actors and studios as loosely-shaped JSON (plain strings,
``{"name": ...}`` or ``{"name", "role", "thumb"}``); ``parse_people``
normalizes every shape into ``Person`` at the store boundary so the graph
code only ever sees one record type.
"""
from dataclasses import dataclass, field, asdict
from typing import Any

CONNECTION_TYPES = (
    'director', 'actor', 'collection', 'genre', 'keyword',
    'studio', 'network', 'similarity', 'ai_diverse',
)

# Edge colouring priority: first type present wins.
PRIMARY_CONNECTION_PRIORITY = (
    'ai_diverse', 'collection', 'director', 'actor', 'network',
    'studio', 'genre', 'keyword', 'similarity',
)

MAX_SHARED_KEYWORDS = 3


@dataclass(frozen=True)
class Person:
    name: str
    role: str | None = None
    thumb: str | None = None


def parse_people(value: Any) -> list[Person]:
    """
    Normalize actor/studio JSON into Person records.

    Accepts None, a list of strings, a list of dicts with at least a
    ``name`` key, or a mix. Entries without a usable name are dropped.
    """
    if not value or not isinstance(value, list):
        return []
    people = []
    for entry in value:
        if isinstance(entry, str):
            name, role, thumb = entry, None, None
        elif isinstance(entry, dict):
            name = entry.get('name')
            role = entry.get('role')
            thumb = entry.get('thumb')
        else:
            name, role, thumb = str(entry), None, None
        if not name or not str(name).strip():
            continue
        people.append(Person(name=str(name).strip(), role=role, thumb=thumb))
    return people


@dataclass
class SimilarityItem:
    id: str
    title: str
    year: int | None = None
    type: str = 'movie'
    genres: list[str] = field(default_factory=list)
    directors: list[str] = field(default_factory=list)
    actors: list[Person] = field(default_factory=list)
    collection_name: str | None = None
    network: str | None = None
    keywords: list[str] = field(default_factory=list)
    studios: list[Person] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: dict) -> "SimilarityItem":
        return cls(
            id=row['id'],
            title=row['title'],
            year=row.get('year'),
            type=row.get('type') or 'movie',
            genres=list(row.get('genres') or []),
            directors=list(row.get('directors') or []),
            actors=parse_people(row.get('actors')),
            collection_name=row.get('collection_name') or None,
            network=row.get('network') or None,
            keywords=list(row.get('keywords') or []),
            studios=parse_people(row.get('studios')),
        )


@dataclass
class ConnectionReason:
    type: str
    value: str | None = None
    values: list[str] | None = None
    photo: str | None = None

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


def _intersection(left: list[str], right: list[str]) -> list[str]:
    """Case-insensitive intersection preserving ``left`` order."""
    right_set = {s.lower() for s in right}
    return [s for s in left if s.lower() in right_set]


def compute_connection_reasons(source: SimilarityItem, target: SimilarityItem) -> list[ConnectionReason]:
    """Why two items are connected; falls back to plain embedding similarity."""
    reasons: list[ConnectionReason] = []

    directors = _intersection(source.directors, target.directors)
    if directors:
        reasons.append(ConnectionReason('director', value=directors[0], values=directors if len(directors) > 1 else None))

    actors = _intersection([a.name for a in source.actors], [a.name for a in target.actors])
    if actors:
        first = actors[0].lower()
        thumb = next((a.thumb for a in source.actors + target.actors if a.name.lower() == first and a.thumb), None)
        reasons.append(ConnectionReason('actor', value=actors[0], values=actors if len(actors) > 1 else None, photo=thumb))

    if source.collection_name and source.collection_name == target.collection_name:
        reasons.append(ConnectionReason('collection', value=source.collection_name))

    genres = _intersection(source.genres, target.genres)
    if genres:
        reasons.append(ConnectionReason('genre', values=genres))

    keywords = _intersection(source.keywords, target.keywords)[:MAX_SHARED_KEYWORDS]
    if keywords:
        reasons.append(ConnectionReason('keyword', values=keywords))

    studios = _intersection([s.name for s in source.studios], [s.name for s in target.studios])
    if studios:
        reasons.append(ConnectionReason('studio', value=studios[0], values=studios if len(studios) > 1 else None))

    if source.network and source.network == target.network:
        reasons.append(ConnectionReason('network', value=source.network))

    if not reasons:
        reasons.append(ConnectionReason('similarity'))
    return reasons


def primary_connection_type(reasons: list[ConnectionReason]) -> str:
    present = {r.type for r in reasons}
    for kind in PRIMARY_CONNECTION_PRIORITY:
        if kind in present:
            return kind
    return 'similarity'


def ai_diverse_reason(seed_title: str) -> ConnectionReason:
    return ConnectionReason('ai_diverse', value=f"AI suggested for fans of {seed_title}")


@dataclass
class GraphNode:
    id: str
    title: str
    year: int | None
    type: str
    is_center: bool = False


@dataclass
class GraphEdge:
    source: str
    target: str
    similarity: float
    reasons: list[ConnectionReason] = field(default_factory=list)

    @property
    def primary_type(self) -> str:
        return primary_connection_type(self.reasons)


@dataclass
class GraphData:
    nodes: list[GraphNode] = field(default_factory=list)
    edges: list[GraphEdge] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'nodes': [asdict(n) for n in self.nodes],
            'edges': [
                {
                    'source': e.source,
                    'target': e.target,
                    'similarity': e.similarity,
                    'primary_type': e.primary_type,
                    'reasons': [r.to_dict() for r in e.reasons],
                }
                for e in self.edges
            ],
        }
