"""
Command line entry point for the neighborhood scan.

Example:
    hoodscan --input cells.csv --output_dir hood_results --k 20 --n_clusters 6
"""

import argparse
import sys
from pathlib import Path

import anndata as ad

from .clustering import ALGORITHMS, METRICS, RANDOM_STATE
from .colocalization import METHODS
from .data_preparation import read_cell_data, read_vocabulary, to_cell_table
from .errors import HoodscanError
from .pipeline import ScanParameters, run_neighborhood_scan
from .probability import KERNELS


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Neighborhood scanning of spatially resolved single-cell data'
    )
    parser.add_argument(
        '--input', '-i', required=True,
        help='Cell table (.csv/.tsv) or AnnData (.h5ad) file'
    )
    parser.add_argument(
        '--output_dir', '-o', default='hoodscan_results',
        help='Output directory for results (default: hoodscan_results)'
    )
    parser.add_argument(
        '--k', type=int, default=20,
        help='Number of nearest neighbors (default: 20)'
    )
    parser.add_argument(
        '--n_clusters', '-n', type=int, default=None,
        help='Number of cellular neighborhoods; clustering is skipped if omitted'
    )
    parser.add_argument(
        '--celltype_key', '-c', default='cell_type',
        help='Column name for cell types (default: cell_type)'
    )
    parser.add_argument('--x_key', default='x_centroid', help='X coordinate column (tables)')
    parser.add_argument('--y_key', default='y_centroid', help='Y coordinate column (tables)')
    parser.add_argument('--spatial_key', default='spatial', help='obsm key for coordinates (h5ad)')
    parser.add_argument('--cell_id_key', default=None, help='Cell id column (tables, default: row index)')
    parser.add_argument(
        '--vocabulary', default=None,
        help='File with the declared cell type names, one per line'
    )
    parser.add_argument(
        '--kernel', choices=sorted(KERNELS), default='gaussian',
        help='Distance weighting kernel (default: gaussian)'
    )
    parser.add_argument('--tau', type=float, default=None,
                        help='Gaussian kernel bandwidth (default: median squared distance)')
    parser.add_argument('--offset', type=float, default=1.0, help='Inverse kernel offset')
    parser.add_argument('--power', type=float, default=1.0, help='Inverse kernel power')
    parser.add_argument('--algorithm', choices=ALGORITHMS, default='kmeans',
                        help='Clustering algorithm (default: kmeans)')
    parser.add_argument('--metric', choices=METRICS, default='euclidean',
                        help='Clustering distance (default: euclidean)')
    parser.add_argument('--correlation', choices=METHODS, default='pearson',
                        help='Colocalization correlation (default: pearson)')
    parser.add_argument('--random_state', type=int, default=RANDOM_STATE, help='Clustering seed')
    parser.add_argument('--n_workers', type=int, default=1, help='Worker threads (default: 1)')
    parser.add_argument(
        '--save_adata', action='store_true',
        help='For .h5ad input, also save the AnnData object annotated with the results'
    )
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    print("=" * 60)
    print("NEIGHBORHOOD SCAN")
    print("=" * 60)
    print(f"Input: {args.input}")
    print(f"Output directory: {args.output_dir}")

    parameters = ScanParameters(
        k=args.k,
        n_clusters=args.n_clusters,
        kernel=args.kernel,
        tau=args.tau,
        offset=args.offset,
        power=args.power,
        cluster_algorithm=args.algorithm,
        cluster_metric=args.metric,
        correlation_method=args.correlation,
        random_state=args.random_state,
        n_workers=args.n_workers
    )

    try:
        vocabulary = read_vocabulary(args.vocabulary) if args.vocabulary else None
        data = read_cell_data(args.input)
        cells = to_cell_table(
            data,
            celltype_key=args.celltype_key,
            x_key=args.x_key,
            y_key=args.y_key,
            spatial_key=args.spatial_key,
            cell_id_key=args.cell_id_key,
            vocabulary=vocabulary
        )
        result = run_neighborhood_scan(cells, parameters)
    except (HoodscanError, KeyError, FileNotFoundError) as error:
        print(f"Error: {error}", file=sys.stderr)
        return 1

    output_dir = result.save(args.output_dir)

    if args.save_adata:
        if isinstance(data, ad.AnnData):
            result.annotate(data)
            output_path = Path(output_dir) / f'{Path(args.input).stem}_hoodscan.h5ad'
            data.write(output_path)
            print(f"  - Saved processed AnnData to: {output_path}")
        else:
            print("  - AnnData not saved (input is not an .h5ad file)")

    print(f"\nCheck the results in: {output_dir}/")
    return 0


if __name__ == '__main__':
    sys.exit(main())
