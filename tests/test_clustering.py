"""
Tests for the per-channel Gaussian mixture model.

Features are drawn directly from known Gaussian clusters so model-order
selection and thresholded classification can be checked without going
through waveform projection.
"""
from __future__ import annotations

import threading

import numpy as np
import pytest

from gmsort.clustering import NOISE_CLASS, ChannelModel, n_free_parameters
from gmsort.config import ModelSelection, SortingConfiguration, TrainingParameters
from gmsort.errors import NotTrainedError, TrainingCancelled
from gmsort.features import DualInflectionProjector

MEANS = np.array([[-80.0, 30.0], [-40.0, 10.0]])


@pytest.fixture
def two_clusters(rng) -> np.ndarray:
    return np.vstack([rng.normal(mean, 4.0, size=(300, 2)) for mean in MEANS])


@pytest.fixture
def one_cluster(rng) -> np.ndarray:
    return rng.normal(MEANS[0], 4.0, size=(400, 2))


def make_model(max_k=5, p_value=0.05, **kwargs) -> ChannelModel:
    return ChannelModel(channel=0, max_k=max_k, unit_start_index=0, p_value=p_value, **kwargs)


class TestModelSelection:

    def test_two_clusters_give_two_components(self, two_clusters):
        model = make_model()
        assert model.train(two_clusters, random_state=0)
        assert model.trained
        assert model.K == 2
        assert model.means.shape == (2, 2)
        assert model.weights.sum() == pytest.approx(1.0)

    def test_recovers_cluster_means(self, two_clusters):
        model = make_model()
        model.train(two_clusters, random_state=0)
        found = model.means[np.argsort(model.means[:, 0])]
        np.testing.assert_allclose(found, MEANS, atol=1.5)

    def test_one_cluster_gives_one_component(self, one_cluster):
        model = make_model()
        model.train(one_cluster, random_state=0)
        assert model.K == 1

    def test_aic_and_likelihood_ratio_find_structure(self, two_clusters):
        for criterion in (ModelSelection.AIC, ModelSelection.LIKELIHOOD_RATIO):
            model = make_model(model_selection=criterion)
            model.train(two_clusters, random_state=0)
            assert 2 <= model.K <= model.max_k

    def test_max_k_caps_order(self, two_clusters):
        model = make_model(max_k=1)
        model.train(two_clusters, random_state=0)
        assert model.K == 1

    def test_selection_stops_at_first_rejection(self, two_clusters):
        model = make_model()
        model.train(two_clusters, random_state=0)
        statuses = [record.status for record in model.selection_trace]
        assert statuses[:2] == ['accepted', 'accepted']
        assert 'accepted' not in statuses[2:]
        assert 'rejected' in statuses

    def test_unfittable_data_leaves_model_untrained(self):
        features = np.full((50, 2), np.nan)
        model = make_model(max_k=3)
        assert not model.train(features, random_state=0)
        assert model.K == 0
        assert not model.trained
        assert model.mixture is None
        assert [r.status for r in model.selection_trace] == ['failed'] * 3

    def test_training_is_deterministic(self, two_clusters):
        a, b = make_model(), make_model()
        a.train(two_clusters, random_state=3)
        b.train(two_clusters, random_state=3)
        assert a.K == b.K
        np.testing.assert_allclose(a.means, b.means)
        np.testing.assert_allclose(a.covariances, b.covariances)

    def test_cancel_event(self, two_clusters):
        event = threading.Event()
        event.set()
        with pytest.raises(TrainingCancelled):
            make_model().train(two_clusters, random_state=0, cancel_event=event)

    def test_free_parameter_count(self):
        # Two 2-D components: 2 means x 2 + 2 covariances x 3 + 1 weight
        assert n_free_parameters(2, 2) == 11
        assert n_free_parameters(1, 1) == 2


class TestClassification:

    @pytest.fixture
    def model(self, two_clusters) -> ChannelModel:
        model = make_model(p_value=0.05)
        model.train(two_clusters, random_state=0)
        return model

    def test_component_mean_classifies_to_its_component(self, model):
        classes = model.classify_thresh(model.means)
        np.testing.assert_array_equal(classes, np.arange(model.K))

    def test_far_point_is_noise(self, model):
        far = np.array([[500.0, -500.0], [-60.0, 300.0]])
        np.testing.assert_array_equal(model.classify_thresh(far), [NOISE_CLASS, NOISE_CLASS])

    def test_membership_probability_bounds(self, model, two_clusters):
        winners, probability = model.membership_probability(two_clusters)
        assert winners.shape == probability.shape == (len(two_clusters),)
        assert np.all((probability >= 0) & (probability <= 1))
        _, at_mean = model.membership_probability(model.means)
        np.testing.assert_allclose(at_mean, 1.0)

    def test_posterior_rows_sum_to_one(self, model, two_clusters):
        np.testing.assert_allclose(model.posterior(two_clusters).sum(axis=1), 1.0)

    def test_labels_in_range(self, model, two_clusters):
        classes = model.classify_thresh(two_clusters)
        assert classes.dtype == np.int64
        assert set(np.unique(classes)) <= set(range(-1, model.K))

    def test_most_training_points_accepted(self, model, two_clusters):
        classes = model.classify_thresh(two_clusters)
        assert np.mean(classes == NOISE_CLASS) < 0.15

    def test_p_value_zero_accepts_everything(self, two_clusters):
        model = make_model(p_value=0.0)
        model.train(two_clusters, random_state=0)
        assert np.all(model.classify_thresh(np.array([[1e4, 1e4]])) >= 0)

    def test_classification_is_deterministic(self, model, two_clusters):
        np.testing.assert_array_equal(model.classify_thresh(two_clusters), model.classify_thresh(two_clusters))

    def test_empty_features(self, model):
        assert model.classify_thresh(np.empty((0, 2))).shape == (0,)

    def test_wrong_dimension(self, model):
        with pytest.raises(ValueError):
            model.classify_thresh(np.zeros((3, 5)))

    def test_untrained_model_cannot_classify(self, two_clusters):
        with pytest.raises(NotTrainedError):
            make_model().classify_thresh(two_clusters)


class TestFromConfig:

    def test_builds_projector_and_settings(self):
        config = SortingConfiguration(projection_mode='dual_inflection', max_k=3, p_value=0.02)
        model = ChannelModel.from_config(5, config, TrainingParameters(), unit_start_index=4)
        assert isinstance(model.projector, DualInflectionProjector)
        assert (model.channel, model.max_k, model.unit_start_index, model.p_value) == (5, 3, 4, 0.02)

    def test_fit_spikes(self, channel_spikes):
        spikes, labels = channel_spikes
        config = SortingConfiguration(projection_mode='dual_inflection')
        model = ChannelModel.from_config(0, config, TrainingParameters())
        features = model.fit_spikes(spikes, random_state=0)
        assert features.shape == (len(spikes), 2)
        assert model.K == 2
        np.testing.assert_allclose(model.project(spikes), features)
