"""Windowed next-feature search for genome browsers.

Scans forward from a chromosome position in fixed-size windows until an
annotation source returns features, the genome runs out, or the caller
cancels.
"""

import logging

from gsearch.config import get_config, get_paths, LOG_LEVEL
from gsearch.database.ufeature import UFeature
from gsearch.database.genome import Genome
from gsearch.database.annotations import (AnnotationStream, TabularStream, BedStream, GeneStream, Gff3Stream,
                                          MemoryStream, FeatureTrack, open_annotations)
from gsearch.database.search import (FeatureSearcher, GenomeSearch, SearchOutcome, SearchWindow,
                                     next_window, MAX_INT)

__all__ = ['logger',
            'get_config', 'get_paths',
            'UFeature', 'Genome',
            'AnnotationStream', 'TabularStream', 'BedStream', 'GeneStream', 'Gff3Stream', 'MemoryStream', 'FeatureTrack', 'open_annotations',
            'FeatureSearcher', 'GenomeSearch', 'SearchOutcome', 'SearchWindow', 'next_window', 'MAX_INT']

# Configure logging
logger = logging.getLogger(__name__)
logger.setLevel(LOG_LEVEL)
