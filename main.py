"""Build, maintain and query accession mapping stores.

Usage:
    python main.py build --db map.db --overwrite --info "NCBI nr 2024" \\
        --classification Taxonomy acc2tax.tsv.gz "NCBI taxonomy" \\
        --classification KEGG acc2kegg.tsv "KEGG orthology"
    python main.py add-column --db map.db --name EC --file acc2ec.tsv --description "EC numbers"
    python main.py compact --db map.db
    python main.py info --db map.db
    python main.py report --db map.db
    python main.py lookup --db map.db -i accessions.txt -o assignments.tsv [-c Taxonomy KEGG]
"""

import argparse
import logging
import os
import re
import sys

from tqdm import tqdm

from accdb import config, database
from accdb.access import AccessionStore
from accdb.create import StoreBuilder
from accdb.errors import AccessionDBError, StoreNotFoundError

_VERSION_SUFFIX_RE = re.compile(r"\.[0-9]*$")


# ---------------------------------------------------------------------------
# Build
# ---------------------------------------------------------------------------

def _require_store(db_path):
    if not os.path.isfile(db_path):
        raise StoreNotFoundError(f"File not found: {db_path}")


def run_build(db_path, classifications, info=None, edition=None, overwrite=False,
              merge=True, has_header=False, options=None):
    """Stage (name, path, description) triples, then merge and compact."""
    print("\n=== Build ===")
    with StoreBuilder(db_path, info=info, overwrite=overwrite, edition=edition,
                      options=options) as builder:
        for name, path, description in classifications:
            builder.insert_classification(name, path, description, has_header=has_header)
        if merge:
            print("\n=== Merge ===")
            builder.merge_tables()
        else:
            print("  Skipping merge, classifications left staged")
    print(f"  Store ready at {db_path}")


def run_add_column(db_path, name, path, description, has_header=False, options=None):
    print("\n=== Add column ===")
    _require_store(db_path)
    with StoreBuilder(db_path, options=options) as builder:
        builder.add_column(name, path, description, has_header=has_header)


def run_compact(db_path, options=None):
    print("\n=== Compact ===")
    _require_store(db_path)
    with StoreBuilder(db_path, options=options) as builder:
        builder.compact()


# ---------------------------------------------------------------------------
# Inspection
# ---------------------------------------------------------------------------

def run_info(db_path, options=None):
    with AccessionStore(db_path, options=options) as store:
        print(store.get_info())
        print(f"Accessions: {store.get_size():,}")


def run_report(db_path, options=None):
    with AccessionStore(db_path, options=options) as store:
        database.print_store_report(store.con, db_path)


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------

def read_accessions(lines, strip_version=False):
    for line in lines:
        tokens = line.split()
        if not tokens or tokens[0].startswith("#"):
            continue
        accession = tokens[0]
        if strip_version:
            accession = _VERSION_SUFFIX_RE.sub("", accession)
        yield accession


def _batches(items, size):
    batch = []
    for item in items:
        batch.append(item)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


def run_lookup(db_path, input_path, output_path=None, classifications=None,
               strip_version=False, batch_size=config.LOOKUP_BATCH_SIZE, options=None):
    """Write one TSV row of classification ids per input accession."""
    options = options or config.StoreOptions()
    with AccessionStore(db_path, options=options) as store:
        names = list(classifications) if classifications else list(store.column_names)
        unknown = [n for n in names if n not in store.column_names]
        if unknown:
            raise ValueError(
                f"Classifications not in store: {', '.join(unknown)} "
                f"(available: {', '.join(store.column_names)})"
            )
        print(f"  Classifications: {', '.join(names)}", file=sys.stderr)

        out = open(output_path, "w", encoding="utf-8") if output_path else sys.stdout
        n_written = 0
        try:
            with open(input_path, "r", encoding="utf-8") as handle:
                out.write("#Accession\t" + "\t".join(names) + "\n")
                accessions = read_accessions(handle, strip_version=strip_version)
                for batch in tqdm(_batches(accessions, batch_size), desc="Lookup",
                                  unit=" batches", disable=not options.show_progress):
                    for accession, values in zip(batch, store.get_values(batch, names)):
                        out.write(accession + "\t" + "\t".join(str(v) for v in values) + "\n")
                        n_written += 1
        finally:
            if out is not sys.stdout:
                out.close()
    print(f"  Wrote {n_written:,} rows", file=sys.stderr)
    return n_written


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------

def build_parser():
    parser = argparse.ArgumentParser(description="Accession mapping store")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--quiet", action="store_true", help="No progress bars")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("build", help="Load classification files and merge them")
    p.add_argument("--db", default=config.DB_PATH, help=f"Store path (default: {config.DB_PATH})")
    p.add_argument("--overwrite", action="store_true", help="Replace an existing store")
    p.add_argument("--info", help="General description of the store")
    p.add_argument("--edition", help="Edition marker")
    p.add_argument("--classification", nargs=3, action="append", required=True,
                   metavar=("NAME", "FILE", "DESCRIPTION"),
                   help="Classification name, accession<TAB>id file, description")
    p.add_argument("--header", action="store_true", help="Source files start with a header line")
    p.add_argument("--no-merge", action="store_true", help="Only stage the classifications")

    p = sub.add_parser("add-column", help="Add a classification to a merged store")
    p.add_argument("--db", default=config.DB_PATH)
    p.add_argument("--name", required=True)
    p.add_argument("--file", required=True)
    p.add_argument("--description", default="")
    p.add_argument("--header", action="store_true")

    for command, text in [("compact", "Drop staging tables and VACUUM"),
                          ("info", "Print the store description"),
                          ("report", "Print table sizes and coverage")]:
        p = sub.add_parser(command, help=text)
        p.add_argument("--db", default=config.DB_PATH)

    p = sub.add_parser("lookup", help="Resolve a file of accessions")
    p.add_argument("--db", default=config.DB_PATH)
    p.add_argument("-i", "--input", required=True, help="One accession per line (first token)")
    p.add_argument("-o", "--output", help="Output TSV (default: stdout)")
    p.add_argument("-c", "--classifications", nargs="+", help="Classifications to report (default: all)")
    p.add_argument("--strip-version", action="store_true", help="Drop trailing .N version suffixes")
    p.add_argument("--batch-size", type=int, default=config.LOOKUP_BATCH_SIZE)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    options = config.StoreOptions(show_progress=not args.quiet)

    try:
        if args.command == "build":
            run_build(args.db, args.classification, info=args.info, edition=args.edition,
                      overwrite=args.overwrite, merge=not args.no_merge,
                      has_header=args.header, options=options)
        elif args.command == "add-column":
            run_add_column(args.db, args.name, args.file, args.description,
                           has_header=args.header, options=options)
        elif args.command == "compact":
            run_compact(args.db, options=options)
        elif args.command == "info":
            run_info(args.db, options=options)
        elif args.command == "report":
            run_report(args.db, options=options)
        elif args.command == "lookup":
            run_lookup(args.db, args.input, output_path=args.output,
                       classifications=args.classifications, strip_version=args.strip_version,
                       batch_size=args.batch_size, options=options)
    except (AccessionDBError, FileNotFoundError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
