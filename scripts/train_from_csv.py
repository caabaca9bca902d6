#!/usr/bin/env python3
"""
Train a network on CSV data and save it as JSON.

Each row of the input CSV is one sample and the matching row of the
target CSV holds its expected outputs.

Usage:
    python scripts/train_from_csv.py inputs.csv targets.csv \
        --hidden 4 --epochs 1000 --output model.json

    # Continue training a saved model
    python scripts/train_from_csv.py inputs.csv targets.csv \
        --resume model.json --epochs 500 --output model.json
"""

import argparse
import logging
import sys
from typing import Any, Dict, Tuple

import numpy as np

from neuro import model_persistence
from neuro.exceptions import NetworkConfigError, ShapeError
from neuro.network import Network, DEFAULT_RATE1, DEFAULT_RATE2


def load_dataset(inputs_path: str, targets_path: str,
                 delimiter: str = ',') -> Tuple[np.ndarray, np.ndarray]:
    """
    Load paired input and target matrices.

    Single-column files are read as one feature per row rather than one
    row of features.
    """
    inputs = np.loadtxt(inputs_path, delimiter=delimiter, ndmin=2)
    targets = np.loadtxt(targets_path, delimiter=delimiter, ndmin=2)
    print(f"📂 Loaded {len(inputs)} samples "
          f"({inputs.shape[1]} inputs, {targets.shape[1]} outputs)")
    return inputs, targets


def print_progress(data: Dict[str, Any]) -> None:
    """Render training progress on the terminal."""
    if data['event'] == 'progress':
        print(f"   epoch {data['epoch']} / progress "
              f"{data['progress']:.2%}", end='\r')
    else:
        print(f"   epoch {data['epoch']}/{data['total_epochs']} "
              f"MSE: {data['mse']:.5f}")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description=__doc__.splitlines()[1],
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    p.add_argument('inputs', help='CSV file of samples')
    p.add_argument('targets', help='CSV file of targets')
    p.add_argument('--output', '-o', required=True,
                   help='where to write the trained network')
    p.add_argument('--resume', help='start from a saved network')
    p.add_argument('--hidden', type=int, default=4)
    p.add_argument('--epochs', type=int, default=1000)
    p.add_argument('--regression', action='store_true',
                   help='linear output instead of sigmoid')
    p.add_argument('--rate1', type=float, default=DEFAULT_RATE1,
                   help='learning rate')
    p.add_argument('--rate2', type=float, default=DEFAULT_RATE2,
                   help='momentum')
    p.add_argument('--seed', type=int, default=None)
    p.add_argument('--delimiter', default=',')
    p.add_argument('--log-level', default='WARNING')
    return p


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.WARNING),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    rng = np.random.default_rng(args.seed)

    try:
        inputs, targets = load_dataset(args.inputs, args.targets,
                                       args.delimiter)

        if args.resume:
            net = model_persistence.load(args.resume, rng=rng)
            print(f"📦 Resumed {net!r}")
        else:
            net = Network(inputs.shape[1], args.hidden, targets.shape[1],
                          regression=args.regression, rate1=args.rate1,
                          rate2=args.rate2, rng=rng)
            print(f"🧠 Created {net!r}")

        print(f"\n🏋️  Training for {args.epochs} epochs...")
        history = net.train(inputs, targets, args.epochs,
                            callback=print_progress)

        model_persistence.save(net, args.output)

    except (ShapeError, NetworkConfigError) as e:
        print(f"\n❌ {e}")
        return 1
    except OSError as e:
        print(f"\n❌ I/O error: {e}")
        return 1

    if history:
        print(f"\n✅ Final MSE: {history[-1]:.5f}")
    print(f"💾 Saved to {args.output}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
