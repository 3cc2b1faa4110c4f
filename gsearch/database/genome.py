"""Chromosome coordinate provider.

A ``Genome`` knows how long each chromosome is and in which order the
chromosomes are walked. The feature searcher only needs those two lookups.
"""

from typing import Dict, Iterator, List, Optional
import logging

import pysam

logger = logging.getLogger(__name__)

chr_lens = {'1': 248937043, '10': 133778498, '11': 135075908, '12': 133238549, '13': 114346637, '14': 106879812, '15': 101979093, '16': 90222678, '17': 83240391, '18': 80247514, '19': 58599303, '2': 242175634, '20': 64327972, '21': 46691226, '22': 50799123, '3': 198228376, '4': 190195978, '5': 181472430, '6': 170745977, '7': 159233377, '8': 145066516, '9': 138320835, 'MT': 16023, 'X': 156027877, 'Y': 57214397}


def iter_chromes(include_mito = False):
    mt_chr = []
    if include_mito:
        mt_chr = ['MT']

    for chr in [str(i) for i in range(1, 23)] + ['X','Y'] + mt_chr:
        yield chr


class Genome:
    """Ordered chromosome lengths.

    Names are kept as given. Lookups accept the name with or without a
    leading ``chr``, so ``"chr1"`` finds ``"1"`` and vice versa.
    """

    def __init__(self, chrom_lengths: Dict[str, int], name: str = ""):
        self.name = name
        self._lengths: Dict[str, int] = {}
        for chrom, length in chrom_lengths.items():
            if length < 0:
                raise ValueError(f"Negative length {length} for chromosome {chrom}")
            self._lengths[str(chrom)] = int(length)
        self._order: List[str] = list(self._lengths.keys())
        self._index = {chrom: i for i, chrom in enumerate(self._order)}

    @classmethod
    def grch38(cls, include_mito = False) -> 'Genome':
        return cls({c: chr_lens[c] for c in iter_chromes(include_mito)}, name="GRCh38")

    @classmethod
    def from_fasta(cls, fasta_path: str) -> 'Genome':
        """Read chromosome names and lengths from an indexed FASTA."""
        with pysam.FastaFile(fasta_path) as ref:
            lengths = dict(zip(ref.references, ref.lengths))
        logger.info(f"Loaded {len(lengths)} chromosomes from {fasta_path}")
        return cls(lengths, name=str(fasta_path))

    @classmethod
    def from_fai(cls, fai_path: str) -> 'Genome':
        """Read a samtools ``.fai`` index: name, length, ... per line."""
        lengths = {}
        with open(fai_path) as f:
            for line in f:
                parts = line.rstrip("\n").split("\t")
                if len(parts) < 2 or not parts[0]:
                    continue
                lengths[parts[0]] = int(parts[1])
        logger.info(f"Loaded {len(lengths)} chromosomes from {fai_path}")
        return cls(lengths, name=str(fai_path))

    def _resolve(self, chrom) -> Optional[str]:
        chrom = str(chrom)
        if chrom in self._index:
            return chrom
        raw = chrom.removeprefix("chr")
        for cand in (raw, "chr" + raw):
            if cand in self._index:
                return cand
        return None

    def get_chrom_length(self, chrom) -> Optional[int]:
        """Length of ``chrom``, or None if the genome does not know it."""
        name = self._resolve(chrom)
        if name is None:
            return None
        return self._lengths[name]

    def get_next_chrom_name(self, chrom) -> Optional[str]:
        """The chromosome after ``chrom`` in walk order, or None at the end."""
        name = self._resolve(chrom)
        if name is None:
            logger.debug(f"Unknown chromosome {chrom}, no next chromosome")
            return None
        i = self._index[name] + 1
        if i >= len(self._order):
            return None
        return self._order[i]

    def iter_chromes(self) -> Iterator[str]:
        yield from self._order

    def __contains__(self, chrom):
        return self._resolve(chrom) is not None

    def __len__(self):
        return len(self._order)

    def __repr__(self):
        return f"Genome({self.name!r}, {len(self)} chromosomes)"
