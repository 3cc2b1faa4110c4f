from typing import Any, Dict, List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from gsearch.database.annotations import ColumnSpec, DerivedSpec


class UFeature:
    """Common representation for features returned by annotation streams.

    Core fields are instance attributes. Everything else lives in
    ``attributes`` and reads like a normal attribute: ``feature.gene_name``.
    Missing attributes read as None.

    Coordinates are half-open, ``[start, end)``.
    """
    _core_fields = frozenset({
        'chrom', 'start', 'end', 'feature_type', 'source',
        'score', 'strand', 'name', 'id'
    })

    _defaults = {
        'chrom': "",
        'start': -1,
        'end': -1,
        'feature_type': "",
        'source': "",
        'score': None,
        'strand': "",
        'name': "",
        'id': "",
    }

    __slots__ = ('chrom', 'start', 'end', 'feature_type', 'source',
                 'score', 'strand', 'name', 'id', 'attributes')

    def __init__(self, data: Optional[Dict[str, Any]] = None, **kwargs):
        all_data = {**(data or {}), **kwargs}
        extra = all_data.pop('attributes', None) or {}

        object.__setattr__(self, 'attributes', {})

        for field in self._core_fields:
            object.__setattr__(self, field, all_data.pop(field, self._defaults.get(field)))

        # empty values are dropped so that missing and blank read the same
        for key, value in list(all_data.items()) + list(extra.items()):
            if value not in (None, "", []):
                self.attributes[key] = value

    @classmethod
    def from_parsed(cls, data: Dict[str, Any],
                    derived: Optional[List['DerivedSpec']] = None) -> 'UFeature':
        """Build a feature from parsed columns, then evaluate derived attributes."""
        feature = cls(data)

        for spec in derived or []:
            result = spec.evaluate(feature)
            if result is None:
                continue
            if spec.name in cls._core_fields:
                object.__setattr__(feature, spec.name, result)
            else:
                feature.attributes[spec.name] = result

        return feature

    @property
    def length(self):
        return self.end - self.start

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_'):
            raise AttributeError(f"'{type(self).__name__}' has no attribute '{name}'")
        try:
            return object.__getattribute__(self, 'attributes').get(name)
        except AttributeError:
            return None

    def __setattr__(self, name: str, value: Any) -> None:
        if name.startswith('_') or name in self._core_fields or name == 'attributes':
            object.__setattr__(self, name, value)
            return
        attrs = object.__getattribute__(self, 'attributes')
        if value not in (None, "", []):
            attrs[name] = value
        elif name in attrs:
            del attrs[name]

    def __lt__(self, other):
        """For heap-based merging."""
        return (self.chrom, self.start, self.end) < (other.chrom, other.start, other.end)

    def __eq__(self, other):
        if not isinstance(other, UFeature):
            return NotImplemented
        return (self.chrom == other.chrom and self.start == other.start
                and self.end == other.end and self.feature_type == other.feature_type
                and self.strand == other.strand)

    def __hash__(self):
        return hash((self.chrom, self.feature_type, self.start, self.end, self.strand))

    def overlaps(self, start: int, end: int) -> bool:
        """True if the feature overlaps the half-open range ``[start, end)``."""
        return self.start < end and self.end > start

    def get(self, att, default=None):
        if att in self._core_fields:
            return getattr(self, att, default)
        return self.attributes.get(att, default)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'chrom': self.chrom,
            'start': self.start,
            'end': self.end,
            'type': self.feature_type,
            'source': self.source,
            'score': self.score,
            'strand': self.strand,
            'name': self.name,
            'id': self.id,
            'attributes': dict(self.attributes),
        }

    def __repr__(self) -> str:
        loc = f"{self.chrom}:{self.start}-{self.end}"
        parts = [f"UFeature({self.feature_type}, {loc}"]

        if self.strand:
            parts.append(f", strand={self.strand!r}")
        if self.name:
            parts.append(f", name={self.name!r}")

        for att, val in self.attributes.items():
            if att.startswith("_"):
                continue
            if val:
                parts.append(f", {att}={val}")

        parts.append(")")
        return "".join(parts)
