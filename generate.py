import argparse

import numpy as np

from macau.config import CoreConfig, MacauConfig, SideInfoConfig
from macau.features import normalize_feature
from macau.helpers import compute_rmse, read_data
from macau.session import Macau
from macau.splits import make_test_split


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Complete a ratings table with BPMF / Macau Gibbs sampling.'
        )
    parser.add_argument("--name", type=str, default="ratings_eval.npy",
                        help="Name of the npy of the ratings table to complete (NaN = missing)")
    parser.add_argument("--row-features", type=str, default=None,
                        help="npy with side information for rows (m x d)")
    parser.add_argument("--col-features", type=str, default=None,
                        help="npy with side information for columns (n x d)")
    parser.add_argument("--feature-method", type=str, default="col_zscore",
                        help="Normalization applied to side information")
    parser.add_argument("--num-latent", type=int, default=10)
    parser.add_argument("--burnin", type=int, default=50)
    parser.add_argument("--nsamples", type=int, default=200)
    parser.add_argument("--alpha", type=float, default=2.0,
                        help="Observation noise precision")
    parser.add_argument("--lambda-beta", type=float, default=5.0,
                        help="Ridge penalty on side-information coefficients")
    parser.add_argument("--no-gram", action="store_true",
                        help="Solve for beta with CG instead of caching F^T F")
    parser.add_argument("--test-fraction", type=float, default=None,
                        help="Hold out this fraction of observed entries for test RMSE")
    parser.add_argument("--workers", type=int, default=1)
    parser.add_argument("--seed", type=int, default=42)
    parser.add_argument("--output", type=str, default="output.npy")
    parser.add_argument("--history", type=str, default=None,
                        help="Optional CSV path for the per-iteration history")
    return parser


def load_features(path: str | None, method: str) -> np.ndarray | None:
    if path is None:
        return None
    return normalize_feature(read_data(path), method=method, impute="col_median")


if __name__ == '__main__':

    args = build_parser().parse_args()

    # Open Ratings table
    print('Ratings loading...')
    table = read_data(args.name)
    print('Ratings Loaded.')

    R_train, R_test = table, None
    if args.test_fraction is not None:
        R_train, R_test, _ = make_test_split(table, args.test_fraction, args.seed)

    row_features = load_features(args.row_features, args.feature_method)
    col_features = load_features(args.col_features, args.feature_method)

    side = SideInfoConfig(lambda_beta=args.lambda_beta,
                          precompute_gram=not args.no_gram)
    cfg = MacauConfig(
        core=CoreConfig(
            num_latent=args.num_latent,
            burnin=args.burnin,
            nsamples=args.nsamples,
            alpha=args.alpha,
            random_state=args.seed,
            n_workers=args.workers,
        ),
        rows=side if row_features is not None else None,
        cols=side if col_features is not None else None,
    )

    model = Macau(cfg).fit(R_train, R_test=R_test,
                           row_features=row_features,
                           col_features=col_features)

    # Complete the ratings table
    completed = model.predict_full()

    if R_test is not None:
        print(f"RMSE on the held-out entries: {compute_rmse(R_test, completed):.4f}")

    if args.history is not None:
        model.history_frame().to_csv(args.history)

    np.save(args.output, completed)
