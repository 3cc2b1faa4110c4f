"""Feature sources for the searcher.

Streams turn annotation files into ``UFeature`` objects over a region. A
``FeatureTrack`` groups several streams and answers range queries with a
merged, sorted list.

Coordinates are 0-based and half-open throughout. Chromosome names are
stored without the ``chr`` prefix; queries accept either form.

Large files should be bgzipped and tabix-indexed. Anything else is loaded
into memory with ``MemoryStream.from_file``.
"""

import bisect
import heapq
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterator, Dict, Any, List, Optional, Tuple, Union, Callable, Iterable
import gzip
from pathlib import Path
from urllib.parse import unquote
import logging

import pysam

from gsearch.database.ufeature import UFeature

logger = logging.getLogger(__name__)


def raw_chrom(chrom) -> str:
    return str(chrom).removeprefix("chr")


@dataclass
class ColumnSpec:
    """How to parse one column of a tabular annotation file.

    Attributes:
        name: Column/attribute name
        type_: Type converter (int, float, str, ...)
        default: Value used when the column is missing, empty or '.'
        formatter: Optional custom parser, receives the raw string
    """
    name: str
    type_: Callable[[str], Any] = str
    default: Any = None
    formatter: Optional[Callable[[str], Any]] = None

    def parse(self, value: str) -> Any:
        if value is None or value == "" or value == ".":
            return self.default

        try:
            if self.formatter:
                return self.formatter(value)
            return self.type_(value)
        except (ValueError, TypeError):
            return self.default


@dataclass
class DerivedSpec:
    """An attribute computed from the feature after the columns are parsed."""
    name: str
    compute: Callable[['UFeature'], Any]
    default: Any = None

    def evaluate(self, feature: 'UFeature') -> Any:
        try:
            return self.compute(feature)
        except (ValueError, TypeError, AttributeError, ZeroDivisionError):
            return self.default


class AnnotationStream(ABC):
    """Abstract base class for annotation streams."""

    def __init__(self, source_name: str):
        self.source_name = source_name

    @abstractmethod
    def stream(self, chrom: Optional[str] = None,
               start: Optional[int] = None,
               end: Optional[int] = None) -> Iterator[UFeature]:
        """Stream features overlapping ``[start, end)`` on ``chrom``, sorted by start."""
        pass

    def query_range(self, chrom: str, start: int, end: int) -> List[UFeature]:
        return [f for f in self.stream(chrom, start, end) if f.overlaps(start, end)]

    def __repr__(self):
        return f"{type(self).__name__}({self.source_name!r})"


class TabularStream(AnnotationStream):
    """Tabix-backed stream parsed through column specs.

    Subclasses describe the layout with class attributes::

        class MyStream(TabularStream):
            columns = ["chrom", "start", "end", ColumnSpec("score", float)]
            derived = [DerivedSpec("length", lambda uf: uf.end - uf.start)]

    ``None`` in ``columns`` skips a column.
    """

    core_columns: Dict[str, ColumnSpec] = {
        "chrom": ColumnSpec("chrom", str, "", formatter = raw_chrom),
        "start": ColumnSpec("start", int, -1),
        "end": ColumnSpec("end", int, -1),
        "name": ColumnSpec("name", str, ""),
        "score": ColumnSpec("score", float, None),
        "strand": ColumnSpec("strand", str, ""),
        "id": ColumnSpec("id", str, ""),
        "source": ColumnSpec("source", str, ""),
    }

    columns: List[Union[ColumnSpec, str, None]] = []
    derived: List[DerivedSpec] = []
    feature_type: str = "region"
    comment_chars: Tuple[str, ...] = ('#', 'track', 'browser')
    delimiter: str = '\t'

    fe_delimiter: str = ';'
    fe_kv_delimiter: str = " "

    def __init__(self, filepath: str, source_name: str = "Tabular", open_index: bool = True):
        super().__init__(source_name)
        self.filepath = Path(filepath).absolute()

        self.tabix = None
        if open_index and self.filepath.suffix == '.gz':
            index_file = Path(str(self.filepath) + '.tbi')
            if index_file.exists():
                self.tabix = pysam.TabixFile(str(self.filepath))
                logger.info(f"Using indexed access for {self.filepath}")
            else:
                logger.warning(f"No index found for {self.filepath}.")

    def _tabix_contig(self, chrom) -> Optional[str]:
        raw = raw_chrom(chrom)
        contigs = set(self.tabix.contigs)
        for cand in (raw, "chr" + raw):
            if cand in contigs:
                return cand
        return None

    def stream(self, chrom: Optional[str] = None,
               start: Optional[int] = None,
               end: Optional[int] = None) -> Iterator[UFeature]:
        if not self.tabix:
            logger.warning(f"No tabix index for {self.filepath}")
            return

        contig = self._tabix_contig(chrom) if chrom else None
        if chrom and contig is None:
            logger.debug(f"{self.filepath.name} has no contig {chrom}")
            return

        query_start = int(start) if start else 0
        query_end = int(end) if end is not None else None

        try:
            if contig is None:
                lines = self.tabix.fetch()
            else:
                lines = self.tabix.fetch(contig, start=query_start, end=query_end)
            for line in lines:
                feature = self.parse_line(line)
                if not self.validate_feature(feature):
                    continue
                if end is not None and not feature.overlaps(query_start, query_end):
                    continue
                yield feature
        except OSError as e:
            logger.error(f"Error fetching {contig}:{query_start}-{query_end} from {self.filepath}: {e}")
            raise

    def validate_feature(self, feature):
        return bool(feature)

    def preparse_line(self, line: str):
        parts = line.rstrip("\n").split(self.delimiter)
        return parts, {}

    def parse_line(self, line: str) -> Optional[UFeature]:
        if not line.strip() or any(line.startswith(c) for c in self.comment_chars):
            return None

        parts, fe_dict = self.preparse_line(line)

        data = {}
        for i, col in enumerate(self.columns):
            if isinstance(col, str):
                col = self.core_columns.get(col)
            if col is None:
                continue
            if i < len(parts):
                data[col.name] = col.parse(parts[i])
            elif col.name in fe_dict:
                data[col.name] = col.parse(fe_dict[col.name])
            else:
                data[col.name] = col.default

        if 'feature_type' not in data or not data['feature_type']:
            data['feature_type'] = self.feature_type
        data['source'] = data.get('source') or self.source_name

        return UFeature.from_parsed(data, derived=self.derived)

    def format_group_entry(self, group_entry: str):
        """Split a ``key value; key value`` attribute column into a dict."""
        feparts = {}

        for p in group_entry.split(self.fe_delimiter):
            kv = p.strip().split(self.fe_kv_delimiter)
            if len(kv) > 2:
                k = kv[0].strip()
                v = " ".join(kv[1:])
            elif len(kv) == 2:
                k, v = kv
            else:
                continue

            k = k.strip()
            v = v.strip().strip('"')
            if not k or not v:
                continue

            if k in feparts:
                vlist = feparts[k]
                if not isinstance(vlist, list):
                    vlist = [vlist]
                vlist.append(v)
                feparts[k] = vlist
            else:
                feparts[k] = v

        return feparts

    def __repr__(self):
        return f"{type(self).__name__}({str(self.filepath)!r}, indexed={self.tabix is not None})"


class BedStream(TabularStream):
    """BED6 (extra columns ignored)."""

    feature_type = "region"
    columns = ["chrom", "start", "end", "name", "score", "strand"]

    derived = [
        DerivedSpec("id", lambda uf: uf.name or f"{uf.chrom}:{uf.start}-{uf.end}"),
    ]

    def __init__(self, filepath: str, source_name: str = "BED", open_index: bool = True):
        super().__init__(filepath, source_name=source_name, open_index=open_index)


def get_gs_feature_name(f):
    if f.transcript_name:
        if f.feature_type == "exon":
            return f.transcript_name + f'-ex{f.exon_number}'
        elif f.feature_type == "CDS":
            return f.transcript_name + f"-CDS{f.exon_number}"
        return f.transcript_name
    return f.gene_name


def get_gs_gene_id(f):
    if f.gene_id:
        return f.gene_id
    elif f.transcript_id:
        return f.transcript_id
    return f"{f.feature_type}:chr{f.chrom}:{f.start}-{f.end}"


class GeneStream(TabularStream):
    """GTF gene annotations. Start is shifted to 0-based on parse."""

    feature_type = "gene"
    fe_delimiter = ";"
    fe_kv_delimiter = " "

    columns = [
        "chrom", "source",
        ColumnSpec("feature_type", str, ""),
        "start", "end", "score", "strand", ColumnSpec("frame", int, default = 0),
        ColumnSpec("gene_id", str, ""),
        ColumnSpec("gene_name", str, ""),
        ColumnSpec("gene_biotype", str, ""),
        ColumnSpec("transcript_id", str, ""),
        ColumnSpec("transcript_name", str, ""),
        ColumnSpec("transcript_biotype", str, ""),
        ColumnSpec("exon_number", int, ""),
    ]

    derived = [
        DerivedSpec("start", lambda uf: uf.start - 1),
        DerivedSpec("id", get_gs_gene_id, default = "[no_id]"),
        DerivedSpec("name", get_gs_feature_name, default = "?"),
    ]

    def __init__(self, filepath: str, source_name: str = "GTF", open_index: bool = True):
        super().__init__(filepath, source_name=source_name, open_index=open_index)

    def preparse_line(self, line: str):
        parts = line.rstrip("\n").split(self.delimiter)
        # attribute column goes through the group parser, the rest is positional
        fe_dict = self.format_group_entry(parts[-1]) if len(parts) > 8 else {}
        return parts[:8], fe_dict


def get_gff_id(f):
    return (f.ID or f.gene_id or f.transcript_id or "").split(":")[-1] or None


class Gff3Stream(GeneStream):
    """GFF3, attributes as ``key=value;`` pairs with percent-escaped values."""

    fe_kv_delimiter = "="

    columns = GeneStream.columns[:8] + [
        ColumnSpec("ID", str, ""),
        ColumnSpec("Name", str, "", formatter = unquote),
        ColumnSpec("Parent", str, ""),
        ColumnSpec("biotype", str, ""),
        ColumnSpec("gene_id", str, ""),
        ColumnSpec("transcript_id", str, ""),
    ]

    derived = [
        DerivedSpec("start", lambda uf: uf.start - 1),
        DerivedSpec("id", get_gff_id, default = "[no_id]"),
        DerivedSpec("name", lambda uf: uf.Name or get_gff_id(uf), default = "?"),
    ]

    def __init__(self, filepath: str, source_name: str = "GFF3", open_index: bool = True):
        super().__init__(filepath, source_name=source_name, open_index=open_index)


class MemoryStream(AnnotationStream):
    """Features held in memory, sorted by start per chromosome."""

    def __init__(self, features: Iterable[UFeature] = (), source_name: str = "Memory",
                 filter: Optional[Callable[[UFeature], bool]] = None):
        super().__init__(source_name)
        self._filter = filter
        self._data: Dict[str, List[UFeature]] = {}
        for f in features:
            self._data.setdefault(raw_chrom(f.chrom), []).append(f)
        for feats in self._data.values():
            feats.sort(key = lambda f: (f.start, f.end))

    def add(self, feature: UFeature):
        feats = self._data.setdefault(raw_chrom(feature.chrom), [])
        keys = [(f.start, f.end) for f in feats]
        feats.insert(bisect.bisect_right(keys, (feature.start, feature.end)), feature)

    @classmethod
    def from_file(cls, file_path, layout: type = BedStream,
                  filter: Optional[Callable[[UFeature], bool]] = None) -> 'MemoryStream':
        """Parse a plain or gzipped text file with a ``TabularStream`` layout."""
        file_path = Path(file_path)
        # parser only, the file is read below
        parser = layout(str(file_path), open_index = False)

        if '.gz' in file_path.suffixes:
            with gzip.open(file_path, "rt") as f:
                lines = f.readlines()
        else:
            with open(file_path, "r") as f:
                lines = f.readlines()

        feats = [parser.parse_line(line) for line in lines]
        feats = [f for f in feats if parser.validate_feature(f)]
        logger.debug(f"loaded {len(feats)} features from {file_path}")
        return cls(feats, source_name = parser.source_name, filter = filter)

    def stream(self, chrom: Optional[str] = None,
               start: Optional[int] = None,
               end: Optional[int] = None) -> Iterator[UFeature]:
        if not chrom:
            chromes = list(self._data.keys())
        else:
            chromes = [raw_chrom(chrom)]

        query_start = int(start) if start else 0

        for c in chromes:
            for feature in self._data.get(c, []):
                if end is not None and feature.start >= end:
                    break
                if feature.end <= query_start:
                    continue
                if self._filter and not self._filter(feature):
                    continue
                yield feature

    def chromes(self):
        return list(self._data.keys())

    def __len__(self):
        return sum(len(v) for v in self._data.values())


def open_annotations(file_path, source_name: Optional[str] = None) -> AnnotationStream:
    """Open an annotation file by suffix; indexed files stream through tabix."""
    file_path = Path(file_path)
    suffixes = [s.lower() for s in file_path.suffixes]
    if '.gff' in suffixes or '.gff3' in suffixes:
        layout = Gff3Stream
    elif '.gtf' in suffixes:
        layout = GeneStream
    else:
        layout = BedStream

    if suffixes and suffixes[-1] == '.gz' and Path(str(file_path) + '.tbi').exists():
        stream = layout(str(file_path))
    else:
        stream = MemoryStream.from_file(file_path, layout = layout)

    if source_name:
        stream.source_name = source_name
    return stream


class FeatureTrack:
    """A named group of annotation streams answering range queries.

    ``get_features`` returns a sorted list; ``stream`` merges lazily. Both
    can be restricted to ``feature_types``.
    """

    def __init__(self, name: str = "features",
                 streams: Optional[Dict[str, AnnotationStream]] = None,
                 feature_types: Optional[Iterable[str]] = None):
        self.name = name
        self.streams: Dict[str, AnnotationStream] = dict(streams or {})
        self.feature_types = set(feature_types) if feature_types else None

    def add_source(self, name: str, stream: AnnotationStream):
        self.streams[name] = stream
        logger.info(f"Added annotation source: {name}")

    def _keep(self, feature):
        return self.feature_types is None or feature.feature_type in self.feature_types

    def stream(self, chrom: Optional[str] = None,
               start: Optional[int] = None,
               end: Optional[int] = None) -> Iterator[UFeature]:
        """Stream all sources merged by position."""
        iterators = [s.stream(chrom, start, end) for s in self.streams.values()]
        for feature in heapq.merge(*iterators):
            if self._keep(feature):
                yield feature

    def get_features(self, chrom: str, start: int, end: int) -> List[UFeature]:
        features = []
        for name, stream in self.streams.items():
            features.extend(f for f in stream.query_range(chrom, start, end) if self._keep(f))
        return sorted(features)

    def __repr__(self):
        return f"FeatureTrack({self.name!r}, sources={list(self.streams)})"
