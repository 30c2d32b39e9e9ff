#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import argparse
import logging
import sys

import numpy as np

from gmsort import (
    GmsortError,
    ProjectionMode,
    SortingConfiguration,
    SpikeSorter,
    TrainingParameters,
)
from gmsort.simulate import simulate_array


def parse_arguments():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description='Train the channel sorter on simulated spikes and classify a fresh batch.')

    # Simulation settings
    parser.add_argument('--channels', type=int, default=4,
                        help='Number of channels (default: 4)')
    parser.add_argument('--spikes-per-channel', type=int, default=600,
                        help='Training spikes simulated on each channel (default: 600)')
    parser.add_argument('--sparse-channel-spikes', type=int, default=10,
                        help='Spikes on the last channel, to show an unsortable channel (default: 10)')
    parser.add_argument('--noise', type=float, default=4.0,
                        help='Noise standard deviation (default: 4.0)')
    parser.add_argument('--seed', type=int, default=0,
                        help='Random seed for simulation and EM (default: 0)')

    # Sorter settings
    parser.add_argument('--projection', type=str, default='dual_inflection',
                        choices=[mode.value for mode in ProjectionMode],
                        help='Feature projection (default: dual_inflection)')
    parser.add_argument('--dimension', type=int, default=None,
                        help='Projection dimension for pca/haar (default: 2)')
    parser.add_argument('--max-k', type=int, default=5,
                        help='Maximum units per channel (default: 5)')
    parser.add_argument('--min-spikes', type=int, default=500,
                        help='Minimum training spikes to sort a channel (default: 500)')
    parser.add_argument('--p-value', type=float, default=0.01,
                        help='Minimum membership probability to accept a spike (default: 0.01)')
    parser.add_argument('--jobs', type=int, default=1,
                        help='Classification threads (default: 1)')

    # Output settings
    parser.add_argument('--output', type=str, default=None,
                        help='Save the trained sorter to this pickle file')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')

    return parser.parse_args()


def create_config_from_args(args):
    """Create SortingConfiguration from command line arguments."""
    return SortingConfiguration(
        n_channels=args.channels,
        max_k=args.max_k,
        min_spikes=args.min_spikes,
        p_value=args.p_value,
        projection_mode=args.projection,
        projection_dimension=args.dimension,
        max_training_spikes_per_channel=max(args.spikes_per_channel, args.min_spikes),
        n_jobs=args.jobs,
    )


def main():
    args = parse_arguments()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s %(name)s %(levelname)s: %(message)s',
    )

    try:
        config = create_config_from_args(args)
        sorter = SpikeSorter(config)
        rng = np.random.default_rng(args.seed)

        counts = [args.spikes_per_channel] * (args.channels - 1) + [args.sparse_channel_spikes]
        training, _ = simulate_array(counts, rng, noise_std=args.noise)
        admitted = sorter.hoard_spikes(training)
        print(f"Hoarded {admitted} of {len(training)} training spikes")

        report = sorter.train(TrainingParameters(random_seed=args.seed))
        summary = report.summary()
        print("\nTraining summary:")
        for key, value in summary.items():
            print(f"  {key}: {value}")
        for channel, reason in report.errors.items():
            print(f"  channel {channel} failed: {reason}")

        fresh, _ = simulate_array([args.spikes_per_channel // 2] * args.channels, rng,
                                   noise_std=args.noise, start_timestamp=10**7)
        labels = sorter.classify(fresh)
        print(f"\nClassified {len(fresh)} spikes, {int(np.sum(labels == 0))} labelled noise/unsorted")

        table = sorter.to_dataframe()
        if not table.empty:
            table['n_classified'] = [int(np.sum(labels == uid)) for uid in table['unit_id']]
            print("\nUnits:")
            print(table.to_string(index=False))

        if args.output:
            sorter.save(args.output)
            print(f"\nSorter saved to {args.output}")

    except GmsortError as e:
        print(f"Error during spike sorting: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
