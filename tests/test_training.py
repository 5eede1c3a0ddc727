"""Tests for training configuration, losses and the risk-minimisation loop."""

import math
import warnings

import numpy as np
import pytest
import torch

from nbe.assessment import assess
from nbe.data import DatasetCollection, ParameterSet
from nbe.estimator import TrainedEstimator
from nbe.exceptions import (
    ConvergenceStall,
    NonFiniteLossError,
    ShapeMismatchError,
    CardinalityMismatchError,
)
from nbe.models import (
    ArchitectureConfig,
    DeepSetsNBE,
    LinearEstimator,
    MeanAggregation,
    MLPEncoder,
    build_estimator,
)
from nbe.training import (
    EarlyStopping,
    NBETrainer,
    TanhLoss,
    TrainerState,
    TrainingConfig,
    compute_metrics,
    get_loss,
    load_checkpoint,
    train,
    train_for_sample_sizes,
    train_with_simulation,
)


class TestTrainingConfig:
    """Tests for TrainingConfig."""

    def test_defaults(self):
        config = TrainingConfig()
        assert config.loss == "absolute"
        assert config.min_delta == 0.0
        assert config.restore_best

    def test_from_dict(self):
        config = TrainingConfig.from_dict({"epochs": 7, "loss": "squared"})
        assert config.epochs == 7
        assert config.loss == "squared"

    def test_unknown_option(self):
        with pytest.raises(ValueError):
            TrainingConfig.from_dict({"epochs": 7, "learning_rate": 0.1})

    def test_from_yaml_section(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "training:\n"
            "  epochs: 12\n"
            "  batch_size: 64\n"
            "  optimizer_params:\n"
            "    lr: 0.01\n"
        )
        config = TrainingConfig.from_yaml(path)
        assert config.epochs == 12
        assert config.batch_size == 64
        assert config.optimizer_params == {"lr": 0.01}

    def test_from_yaml_whole_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("epochs: 4\nearly_stopping_patience: null\n")
        config = TrainingConfig.from_yaml(path)
        assert config.epochs == 4
        assert config.early_stopping_patience is None

    @pytest.mark.parametrize(
        "options",
        [
            {"epochs": 0},
            {"loss": "hinge"},
            {"optimizer": "lbfgs"},
            {"min_delta": -1.0},
            {"epochs_per_theta_refresh": 3, "epochs_per_Z_refresh": 2},
        ],
    )
    def test_invalid(self, options):
        with pytest.raises(ValueError):
            TrainingConfig(**options)

    def test_replace(self):
        config = TrainingConfig(epochs=5).replace(batch_size=8)
        assert config.epochs == 5
        assert config.batch_size == 8

    def test_to_dict_with_callable_loss(self):
        config = TrainingConfig(loss=TanhLoss(0.5))
        assert config.to_dict()["loss"] == "TanhLoss"


class TestLosses:
    """Tests for loss resolution."""

    def test_named_losses(self):
        estimates = torch.tensor([[1.0], [3.0]])
        targets = torch.tensor([[0.0], [0.0]])
        assert get_loss("absolute")(estimates, targets).item() == pytest.approx(2.0)
        assert get_loss("squared")(estimates, targets).item() == pytest.approx(5.0)

    def test_tanh_loss_bounded(self):
        loss = TanhLoss(k=0.1)(torch.tensor([100.0]), torch.tensor([0.0]))
        assert loss.item() == pytest.approx(1.0)
        with pytest.raises(ValueError):
            TanhLoss(k=0)

    def test_callable_passthrough(self):
        fn = lambda a, b: (a - b).sum()
        assert get_loss(fn) is fn

    def test_unknown(self):
        with pytest.raises(ValueError):
            get_loss("hinge")


class TestEarlyStopping:
    """Tests for the early-stopping rule."""

    def test_equal_risk_is_not_improvement(self):
        early_stopping = EarlyStopping(patience=2)
        assert not early_stopping(1.0)
        assert not early_stopping(1.0)
        assert early_stopping(1.0)

    def test_strict_improvement_resets(self):
        early_stopping = EarlyStopping(patience=2)
        for value in [1.0, 1.1, 0.9, 1.0]:
            assert not early_stopping(value)
        assert early_stopping(0.95)

    def test_min_delta_tolerance(self):
        early_stopping = EarlyStopping(patience=2, min_delta=0.1)
        assert not early_stopping(1.0)
        assert not early_stopping(0.95)
        assert early_stopping(0.92)

    def test_reset(self):
        early_stopping = EarlyStopping(patience=1)
        early_stopping(1.0)
        assert early_stopping(2.0)
        early_stopping.reset()
        assert not early_stopping(5.0)


def test_compute_metrics():
    predictions = torch.tensor([[1.0, 2.0], [3.0, 2.0]])
    targets = torch.tensor([[0.0, 2.0], [1.0, 2.0]])
    metrics = compute_metrics(predictions, targets, ["mu", "sigma"])
    assert metrics["mu_mae"] == pytest.approx(1.5)
    assert metrics["mu_bias"] == pytest.approx(1.5)
    assert metrics["mu_rmse"] == pytest.approx(math.sqrt(2.5))
    assert metrics["sigma_mae"] == pytest.approx(0.0)
    assert metrics["total_mae"] == pytest.approx(0.75)


class TestNBETrainer:
    """Tests for NBETrainer."""

    def test_fit_returns_trained_estimator(self, small_model, quiet_config, gaussian_data):
        trainer = NBETrainer(small_model, quiet_config)
        estimator = trainer.fit(*gaussian_data)
        assert isinstance(estimator, TrainedEstimator)
        assert trainer.state is TrainerState.TRAINED
        assert estimator.param_names == ["mu", "sigma"]
        assert not estimator.network.training
        assert 1 <= len(estimator.history["train_risk"]) <= quiet_config.epochs
        assert math.isfinite(estimator.history["initial_val_risk"])
        assert set(estimator.history) >= {"val_risk", "learning_rate", "val_mu_mae", "val_sigma_mae"}

    def test_input_model_not_mutated(self, small_model, quiet_config, gaussian_data):
        before = {k: v.clone() for k, v in small_model.state_dict().items()}
        train(small_model, gaussian_data[0], gaussian_data[2], gaussian_data[1], gaussian_data[3], quiet_config)
        for key, value in small_model.state_dict().items():
            assert torch.equal(value, before[key])

    def test_second_fit_rejected(self, small_model, quiet_config, gaussian_data):
        trainer = NBETrainer(small_model, quiet_config)
        trainer.fit(*gaussian_data)
        with pytest.raises(RuntimeError):
            trainer.fit(*gaussian_data)

    def test_cardinality_checked_before_training(self, small_model, quiet_config, gaussian_data):
        theta_train, Z_train, theta_val, Z_val = gaussian_data
        trainer = NBETrainer(small_model, quiet_config)
        with pytest.raises(CardinalityMismatchError):
            trainer.fit(
                theta_train.subset(list(range(5))), Z_train.subset(list(range(4))), theta_val, Z_val
            )
        assert trainer.state is TrainerState.UNTRAINED

        trainer.fit(*gaussian_data)
        assert trainer.state is TrainerState.TRAINED

    def test_replicate_shape_checked(self, small_model, quiet_config, gaussian_data):
        theta_train, _, theta_val, Z_val = gaussian_data
        Z_wrong = DatasetCollection.from_tensor(torch.randn(len(theta_train), 10, 2))
        with pytest.raises(ShapeMismatchError):
            NBETrainer(small_model, quiet_config).fit(theta_train, Z_wrong, theta_val, Z_val)

    def test_parameter_count_checked(self, small_model, quiet_config, gaussian_data):
        _, Z_train, theta_val, Z_val = gaussian_data
        theta_wrong = ParameterSet(np.zeros((len(Z_train), 3)))
        with pytest.raises(ShapeMismatchError):
            NBETrainer(small_model, quiet_config).fit(theta_wrong, Z_train, theta_val, Z_val)

    def test_best_epoch_has_lowest_risk(self, small_model, gaussian_data):
        config = TrainingConfig(epochs=6, verbose=False, seed=0, early_stopping_patience=None)
        estimator = NBETrainer(small_model, config).fit(*gaussian_data)
        risks = [estimator.history["initial_val_risk"]] + estimator.history["val_risk"]
        assert estimator.best_epoch == int(np.argmin(risks))

    def test_early_stopping_warns(self, small_model, gaussian_data):
        # Zero learning rate: the validation risk never improves on its initial value
        config = TrainingConfig(
            epochs=10, verbose=False, seed=0,
            optimizer_params={"lr": 0.0}, early_stopping_patience=1,
        )
        with pytest.warns(ConvergenceStall):
            estimator = NBETrainer(small_model, config).fit(*gaussian_data)
        assert estimator.stopped_early
        assert estimator.best_epoch == 0
        assert len(estimator.history["val_risk"]) == 1

    def test_non_finite_risk(self, small_model, quiet_config, gaussian_data):
        theta_train, Z_train, theta_val, Z_val = gaussian_data
        corrupted = Z_train.stack().clone()
        corrupted[0, 0, 0] = float("nan")
        with pytest.raises(NonFiniteLossError) as excinfo:
            NBETrainer(small_model, quiet_config).fit(
                theta_train, DatasetCollection.from_tensor(corrupted), theta_val, Z_val
            )
        error = excinfo.value
        assert error.epoch == 1
        assert isinstance(error.checkpoint, TrainedEstimator)
        assert error.checkpoint.best_epoch == 0
        assert all(torch.isfinite(p).all() for p in error.checkpoint.network.parameters())

    def test_checkpoint_written(self, small_model, gaussian_data, tmp_path):
        config = TrainingConfig(epochs=3, verbose=False, seed=0, checkpoint_dir=str(tmp_path))
        estimator = NBETrainer(small_model, config).fit(*gaussian_data)
        path = tmp_path / "best_model.pt"
        assert path.exists() == (estimator.best_epoch > 0)
        if path.exists():
            checkpoint = load_checkpoint(path, build_estimator(small_model.architecture))
            assert checkpoint["epoch"] == estimator.best_epoch

    def test_tensorboard_logging(self, small_model, gaussian_data, tmp_path):
        log_dir = tmp_path / "runs"
        config = TrainingConfig(epochs=2, verbose=False, seed=0, log_dir=str(log_dir))
        NBETrainer(small_model, config).fit(*gaussian_data)
        assert any(log_dir.iterdir())

    def test_request_stop(self, small_model, quiet_config, gaussian_data):
        trainer = NBETrainer(small_model, quiet_config)
        trainer.request_stop()
        estimator = trainer.fit(*gaussian_data)
        assert estimator.history["train_risk"] == []
        assert estimator.best_epoch == 0

    def test_ragged_training_data(self, small_model, quiet_config, rng, gaussian_prior, simulator):
        theta = gaussian_prior.sample(40, rng)
        datasets = [simulator.simulate(theta.subset([i]), int(m), rng)[0]
                    for i, m in enumerate(rng.integers(5, 15, size=40))]
        Z = DatasetCollection(datasets)
        estimator = train(small_model, theta, theta, Z, Z, quiet_config)
        assert len(estimator.history["train_risk"]) >= 1


class TestConvergence:
    """Known-answer training problem."""

    def test_gaussian_mean_reaches_bayes_risk(self, known_sigma_simulator):
        """
        mu ~ N(0, 1), Z_i ~ N(mu, 1) with m = 50. Under squared loss the Bayes
        estimator is the posterior mean m * mean(Z) / (m + 1), with Bayes risk
        1 / (m + 1), which the mean-aggregated linear network can represent.
        """
        torch.manual_seed(0)
        rng = np.random.default_rng(0)
        m = 50
        psi = MLPEncoder(input_shape=(1,), hidden_dim=8, hidden_layers=[])
        model = DeepSetsNBE(psi, MeanAggregation(), LinearEstimator(8, 1))

        theta_train = ParameterSet(rng.normal(size=(2000, 1)), names=["mu"])
        theta_val = ParameterSet(rng.normal(size=(500, 1)), names=["mu"])
        Z_train = known_sigma_simulator.simulate(theta_train, m, rng)
        Z_val = known_sigma_simulator.simulate(theta_val, m, rng)

        config = TrainingConfig(
            epochs=40, batch_size=64, loss="squared", verbose=False, seed=0,
            optimizer_params={"lr": 1e-2}, early_stopping_patience=None,
        )
        estimator = train(model, theta_train, theta_val, Z_train, Z_val, config)

        history = estimator.history
        assert history["train_risk"][-1] < history["train_risk"][0]
        assert min(history["val_risk"]) < 0.03

        risk = assess(estimator, theta_val, Z_val).risk("squared")
        assert risk < 0.03

    def test_training_risk_decreases_on_average(self, known_sigma_simulator):
        """Per-epoch training risk, averaged over seeds, does not go up."""
        m, epochs = 50, 12
        curves = []
        for seed in range(3):
            torch.manual_seed(seed)
            rng = np.random.default_rng(seed)
            psi = MLPEncoder(input_shape=(1,), hidden_dim=8, hidden_layers=[])
            model = DeepSetsNBE(psi, MeanAggregation(), LinearEstimator(8, 1))

            theta_train = ParameterSet(rng.normal(size=(1000, 1)), names=["mu"])
            theta_val = ParameterSet(rng.normal(size=(200, 1)), names=["mu"])
            Z_train = known_sigma_simulator.simulate(theta_train, m, rng)
            Z_val = known_sigma_simulator.simulate(theta_val, m, rng)

            config = TrainingConfig(
                epochs=epochs, batch_size=64, loss="squared", verbose=False, seed=seed,
                optimizer_params={"lr": 1e-2}, early_stopping_patience=None,
            )
            estimator = train(model, theta_train, theta_val, Z_train, Z_val, config)
            curves.append(estimator.history["train_risk"])

        mean_risk = np.mean(curves, axis=0)
        assert mean_risk.shape == (epochs,)
        # Allow for minibatch noise around the Bayes risk 1 / (m + 1)
        assert np.all(np.diff(mean_risk) <= 0.005)
        assert mean_risk[-1] < 0.5 * mean_risk[0]


class TestSimulationTraining:
    """Tests for training with a sampler and simulator."""

    def test_train_with_simulation(self, small_model, gaussian_prior, simulator):
        estimator = train_with_simulation(
            small_model, gaussian_prior, simulator, m=10, K=128,
            epochs=2, verbose=False, seed=1,
        )
        assert isinstance(estimator, TrainedEstimator)
        assert estimator.param_names == ["mu", "sigma"]

    def test_refresh_schedule(self, small_model, gaussian_prior, simulator):
        calls = {"sample": 0, "simulate": 0}

        def sampler(K, rng):
            calls["sample"] += 1
            return gaussian_prior.sample(K, rng)

        def simulate(theta, m, rng):
            calls["simulate"] += 1
            return simulator.simulate(theta, m, rng)

        config = TrainingConfig(
            epochs=4, verbose=False, seed=0, early_stopping_patience=None,
            epochs_per_theta_refresh=2, epochs_per_Z_refresh=1,
        )
        train_with_simulation(small_model, sampler, simulate, m=5, K=64, K_val=32, config=config)

        # Validation and initial training draws, then theta at epoch 3 and Z at epochs 2-4
        assert calls["sample"] == 3
        assert calls["simulate"] == 5

    def test_reproducible_with_seed(self, small_model, gaussian_prior, simulator):
        options = dict(m=5, K=64, epochs=2, verbose=False, seed=3)
        a = train_with_simulation(small_model, gaussian_prior, simulator, **options)
        b = train_with_simulation(small_model, gaussian_prior, simulator, **options)
        assert a.history["val_risk"] == b.history["val_risk"]


class TestSampleSizes:
    """Tests for training over several sample sizes."""

    def test_one_estimator_per_size(self, small_model, quiet_config, gaussian_data):
        theta_train, Z_train, theta_val, Z_val = gaussian_data
        estimators = train_for_sample_sizes(
            small_model, theta_train, theta_val, Z_train, Z_val, [10, 5], quiet_config
        )
        assert len(estimators) == 2
        assert all(isinstance(e, TrainedEstimator) for e in estimators)

    def test_too_few_replicates(self, small_model, quiet_config, gaussian_data):
        theta_train, Z_train, theta_val, Z_val = gaussian_data
        with pytest.raises(CardinalityMismatchError):
            train_for_sample_sizes(
                small_model, theta_train, theta_val, Z_train, Z_val, [30], quiet_config
            )


class TestTrainedEstimator:
    """Tests for saving and loading trained estimators."""

    def test_save_load_round_trip(self, small_model, quiet_config, gaussian_data, tmp_path):
        estimator = train(small_model, gaussian_data[0], gaussian_data[2], gaussian_data[1], gaussian_data[3], quiet_config)
        path = tmp_path / "estimator.pt"
        estimator.save(path)

        loaded = TrainedEstimator.load(path)
        Z = torch.randn(4, 10, 1)
        assert torch.allclose(estimator(Z), loaded(Z))
        assert loaded.param_names == estimator.param_names
        assert loaded.best_epoch == estimator.best_epoch

    def test_load_without_architecture(self, tmp_path):
        psi = MLPEncoder(input_shape=(1,), hidden_dim=4)
        network = DeepSetsNBE(psi, MeanAggregation(), LinearEstimator(4, 1))
        path = tmp_path / "estimator.pt"
        TrainedEstimator(network).save(path)

        with pytest.raises(ValueError):
            TrainedEstimator.load(path)
        fresh = DeepSetsNBE(MLPEncoder(input_shape=(1,), hidden_dim=4), MeanAggregation(), LinearEstimator(4, 1))
        loaded = TrainedEstimator.load(path, network=fresh)
        Z = torch.randn(2, 5, 1)
        assert torch.allclose(loaded(Z), TrainedEstimator(network)(Z))

    def test_warm_start(self, small_model, quiet_config, gaussian_data):
        first = train(small_model, gaussian_data[0], gaussian_data[2], gaussian_data[1], gaussian_data[3], quiet_config)
        second = train(first, gaussian_data[0], gaussian_data[2], gaussian_data[1], gaussian_data[3], quiet_config)
        assert second.history["initial_val_risk"] == pytest.approx(
            first.history["val_risk"][first.best_epoch - 1]
            if first.best_epoch > 0 else first.history["initial_val_risk"]
        )


@pytest.mark.slow
def test_gaussian_location_scale_scenario():
    """mu ~ N(0, 1), sigma ~ Gamma(1, 1), m = 15, absolute loss."""
    from nbe.priors import GammaPrior, JointPrior, NormalPrior
    from nbe.simulator import GaussianSimulator

    torch.manual_seed(0)
    rng = np.random.default_rng(0)
    prior = JointPrior({"mu": NormalPrior(0.0, 1.0), "sigma": GammaPrior(1.0, 1.0)})
    simulator = GaussianSimulator()
    m = 15

    theta_train = prior.sample(10000, rng)
    theta_val = prior.sample(1000, rng)
    Z_train = simulator.simulate(theta_train, m, rng)
    Z_val = simulator.simulate(theta_val, m, rng)

    model = build_estimator(ArchitectureConfig(input_shape=(1,), num_params=2))
    config = TrainingConfig(epochs=50, batch_size=64, loss="absolute", verbose=False, seed=0)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceStall)
        estimator = train(model, theta_train, theta_val, Z_train, Z_val, config)

    theta = ParameterSet([0.0, 0.5], names=["mu", "sigma"])
    Z_test = simulator.simulate(theta.repeat(100), m, rng)
    result = assess(estimator, theta, Z_test)

    assert len(result) == 100
    mean = result.empirical_mean()
    assert mean[0].item() == pytest.approx(0.0, abs=0.1)
    assert mean[1].item() == pytest.approx(0.5, abs=0.1)
