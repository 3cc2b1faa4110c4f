import argparse
import logging
import sys

from tabulate import tabulate

from gsearch.config import DEFAULT_WINDOW_SIZE, DEFAULT_TIMEOUT, get_paths
from gsearch.database.annotations import FeatureTrack, open_annotations
from gsearch.database.genome import Genome
from gsearch.database.search import GenomeSearch, SearchOutcome

logger = logging.getLogger(__name__)


def get_feature_parts(f, part_fmt = "{att}={v}"):
    fparts = []
    fd = f.to_dict()
    for att, v in fd.items():
        if att == "attributes":
            continue
        fparts.append(part_fmt.format(att=att, v=v))

    attparts = []
    for att, v in f.attributes.items():
        attparts.append(part_fmt.format(att=att, v=v))

    return fparts, attparts


def format_feature_long(f):
    fparts, attparts = get_feature_parts(f, part_fmt = "{att}: {v}")
    return "\n".join([f"{f.name or f.id} ({f.feature_type})"] + ["  " + p for p in fparts + attparts])


def format_features_table(features):
    rows = [[f.chrom, f.start, f.end, f.feature_type, f.name, f.strand] for f in features]
    return tabulate(rows, headers = ["chrom", "start", "end", "type", "name", "strand"])


def load_genome(args):
    if args.fasta:
        return Genome.from_fasta(args.fasta)
    if args.fai:
        return Genome.from_fai(args.fai)
    if args.no_genome:
        return None
    return Genome.grch38(include_mito = args.mito)


def build_parser():
    default_annotations, _ = get_paths()

    parser = argparse.ArgumentParser(description='Find the next annotated feature downstream of a position')
    parser.add_argument('annotations', nargs='?', default=default_annotations,
                       help='BED, GTF or GFF3 file, plain, gzipped, or bgzipped with a .tbi index')
    parser.add_argument('--chrom', '-c', type=str, default='1',
                       help='Chromosome to start from')
    parser.add_argument('--position', '-p', type=int, default=0,
                       help='Starting position, 0-based (default: 0)')
    parser.add_argument('--window-size', '-w', type=int, default=DEFAULT_WINDOW_SIZE,
                       help=f'Search window in bp (default: {DEFAULT_WINDOW_SIZE})')
    parser.add_argument('--types', '-t', type=str, default="",
                       help='feature types, comma delimited (e.g. "gene,exon")')
    parser.add_argument('--fasta', type=str, default="",
                       help='indexed FASTA to read chromosome lengths from')
    parser.add_argument('--fai', type=str, default="",
                       help='.fai index to read chromosome lengths from')
    parser.add_argument('--no-genome', action="store_true",
                       help='search without chromosome lengths (single chromosome)')
    parser.add_argument('--mito', action="store_true",
                       help='include MT when walking the built-in GRCh38 chromosomes')
    parser.add_argument('--timeout', type=float, default=DEFAULT_TIMEOUT,
                       help='give up after this many seconds')
    parser.add_argument('--long', '-l', action="store_true",
                       help='flag for long format')
    parser.add_argument('--verbose', '-v', action="store_true")
    return parser


def main(argv = None):
    args = build_parser().parse_args(argv)

    if args.verbose:
        logging.basicConfig(level = logging.DEBUG)
        logging.getLogger("gsearch").setLevel(logging.DEBUG)

    if args.window_size <= 0:
        print(f"window size must be positive, got {args.window_size}", file = sys.stderr)
        return 2

    try:
        stream = open_annotations(args.annotations)
        genome = load_genome(args)
    except OSError as e:
        logger.error(f"Failed to load inputs: {e}")
        print(f"error: {e}", file = sys.stderr)
        return 2

    if genome is not None and args.chrom not in genome:
        logger.warning(f"Chromosome {args.chrom} is not in {genome.name}, searching it without a length")

    feature_types = [t.strip() for t in args.types.split(",") if t.strip()]
    track = FeatureTrack("cli", feature_types = feature_types or None)
    track.add_source(stream.source_name, stream)

    search = GenomeSearch(track, genome, window_size = args.window_size)
    searcher = search.next_feature(args.chrom, args.position, timeout = args.timeout)

    if searcher.outcome is not SearchOutcome.FOUND:
        print(f"no feature found from {args.chrom}:{args.position} ({searcher.outcome.value})")
        return 1

    features = list(searcher.get_result())
    print(f"found {len(features)} features in {searcher.window}")
    if args.long:
        for f in features:
            print(format_feature_long(f))
    else:
        print(format_features_table(features))
    return 0


if __name__ == "__main__":
    sys.exit(main())
