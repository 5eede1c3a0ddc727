"""Parameter sets, dataset collections and training-set assembly.

A Dataset is a tensor of shape (m, *feature_shape) holding m exchangeable
replicates simulated under one parameter vector. Datasets are kept as a
sequence of tensors with explicit shape metadata rather than a single dense
array, so that the replicate count m may vary from one dataset to the next.
"""

from collections.abc import Sequence
from typing import Iterable, List, Optional, Tuple, Union

import numpy as np
import torch
from torch import Tensor

from .exceptions import CardinalityMismatchError, ShapeMismatchError

ArrayLike = Union[np.ndarray, Tensor, Sequence]


def as_float_tensor(x: ArrayLike) -> Tensor:
    """
    Copy numpy arrays, tensors or nested sequences into a float32 tensor.

    The result never shares memory with ``x``.

    Raises:
        ShapeMismatchError: If a nested sequence holds elements of different shapes.
    """
    if isinstance(x, Tensor):
        return x.detach().to(torch.float32, copy=True)
    if isinstance(x, np.ndarray):
        return torch.tensor(x, dtype=torch.float32)
    try:
        array = np.array(x, dtype=np.float32)
    except ValueError as err:
        raise ShapeMismatchError(f"Elements have inconsistent shapes: {err}") from err
    return torch.from_numpy(array)


class ParameterSet:
    """
    K parameter vectors of common length p, stored as a (K, p) tensor.

    Row i is the parameter vector under which dataset i of the matching
    DatasetCollection was simulated. A 1-D input is treated as a single
    parameter vector (K = 1).

    Args:
        values: Array-like of shape (K, p) or (p,)
        names: Optional parameter names, one per column
    """

    def __init__(self, values: ArrayLike, names: Optional[Iterable[str]] = None):
        values = as_float_tensor(values)
        if values.dim() == 1:
            values = values.unsqueeze(0)
        if values.dim() != 2:
            raise ShapeMismatchError(
                f"ParameterSet expects a (K, p) array, got shape {tuple(values.shape)}"
            )
        if names is not None:
            names = tuple(names)
            if len(names) != values.shape[1]:
                raise ShapeMismatchError(
                    f"Got {len(names)} parameter names for {values.shape[1]} parameters"
                )
        self._values = values
        self._names = names

    @property
    def values(self) -> Tensor:
        return self._values

    @property
    def names(self) -> List[str]:
        if self._names is None:
            return [f"theta_{i + 1}" for i in range(self.num_params)]
        return list(self._names)

    @property
    def num_params(self) -> int:
        return self._values.shape[1]

    def __len__(self) -> int:
        return self._values.shape[0]

    def __getitem__(self, idx: int) -> Tensor:
        return self._values[idx]

    def __iter__(self):
        return iter(self._values)

    def repeat(self, n: int) -> "ParameterSet":
        """Repeat every parameter vector n times consecutively."""
        return ParameterSet(self._values.repeat_interleave(n, dim=0), self._names)

    def subset(self, indices) -> "ParameterSet":
        indices = torch.as_tensor(indices, dtype=torch.long)
        return ParameterSet(self._values[indices], self._names)

    def numpy(self) -> np.ndarray:
        return self._values.numpy()

    def __repr__(self) -> str:
        return f"ParameterSet(K={len(self)}, p={self.num_params}, names={self.names})"


class DatasetCollection(Sequence):
    """
    Ordered sequence of K datasets sharing one per-replicate feature shape.

    Each dataset is a float32 tensor of shape (m_i, *feature_shape). The
    replicate counts m_i may differ between datasets.

    Args:
        datasets: Iterable of array-likes, each of shape (m, *feature_shape)

    Raises:
        CardinalityMismatchError: If ``datasets`` is empty.
        ShapeMismatchError: If a dataset has fewer than 2 dimensions, no
            replicates, replicates of different shapes, or a feature shape
            different from the first dataset.
    """

    def __init__(self, datasets: Iterable[ArrayLike]):
        tensors = []
        for i, z in enumerate(datasets):
            try:
                tensors.append(as_float_tensor(z))
            except ShapeMismatchError as err:
                raise ShapeMismatchError(f"Dataset {i}: {err}") from err
        self._validate(tensors)

    def _validate(self, tensors: List[Tensor]):
        if not tensors:
            raise CardinalityMismatchError("DatasetCollection needs at least one dataset")

        feature_shape = None
        for i, z in enumerate(tensors):
            if z.dim() < 2:
                raise ShapeMismatchError(
                    f"Dataset {i} has shape {tuple(z.shape)}; expected (m, *feature_shape)"
                )
            if z.shape[0] == 0:
                raise ShapeMismatchError(f"Dataset {i} contains no replicates")
            if feature_shape is None:
                feature_shape = tuple(z.shape[1:])
            elif tuple(z.shape[1:]) != feature_shape:
                raise ShapeMismatchError(
                    f"Dataset {i} has replicate shape {tuple(z.shape[1:])}, "
                    f"expected {feature_shape}"
                )

        self._datasets = tuple(tensors)
        self._feature_shape = feature_shape
        self._stacked = None

    @classmethod
    def from_tensor(cls, array: ArrayLike) -> "DatasetCollection":
        """Build a collection from a dense (K, m, *feature_shape) array."""
        array = as_float_tensor(array)
        if array.dim() < 3:
            raise ShapeMismatchError(
                f"Expected a (K, m, *feature_shape) array, got shape {tuple(array.shape)}"
            )
        # Datasets are views into the private copy
        collection = cls.__new__(cls)
        collection._validate(list(array.unbind(0)))
        collection._stacked = array
        return collection

    @property
    def feature_shape(self) -> Tuple[int, ...]:
        return self._feature_shape

    @property
    def replicate_counts(self) -> List[int]:
        return [z.shape[0] for z in self._datasets]

    @property
    def is_uniform(self) -> bool:
        """True when all datasets have the same number of replicates."""
        return len(set(self.replicate_counts)) == 1

    def __len__(self) -> int:
        return len(self._datasets)

    def __getitem__(self, idx):
        if isinstance(idx, slice):
            return DatasetCollection(self._datasets[idx])
        return self._datasets[idx]

    def __iter__(self):
        return iter(self._datasets)

    def stack(self) -> Tensor:
        """
        Return the dense (K, m, *feature_shape) tensor.

        Raises:
            ShapeMismatchError: If the replicate counts differ.
        """
        if self._stacked is None:
            if not self.is_uniform:
                raise ShapeMismatchError(
                    "Cannot stack datasets with different replicate counts "
                    f"{sorted(set(self.replicate_counts))}"
                )
            self._stacked = torch.stack(self._datasets, dim=0)
        return self._stacked

    def subset(self, indices) -> "DatasetCollection":
        return DatasetCollection([self._datasets[int(i)] for i in indices])

    def subset_replicates(self, m: int) -> "DatasetCollection":
        """Keep the first m replicates of every dataset."""
        short = [i for i, count in enumerate(self.replicate_counts) if count < m]
        if short:
            raise CardinalityMismatchError(
                f"{len(short)} dataset(s) have fewer than {m} replicates "
                f"(first offending index: {short[0]})"
            )
        return DatasetCollection([z[:m] for z in self._datasets])

    def concat(self, other: "DatasetCollection") -> "DatasetCollection":
        return DatasetCollection(self._datasets + tuple(other))

    def __repr__(self) -> str:
        counts = sorted(set(self.replicate_counts))
        return (
            f"DatasetCollection(K={len(self)}, m={counts if len(counts) > 1 else counts[0]}, "
            f"feature_shape={self.feature_shape})"
        )


def as_collection(Z) -> DatasetCollection:
    """Wrap simulator output (collection, dense array or list) as a DatasetCollection."""
    if isinstance(Z, DatasetCollection):
        return Z
    if isinstance(Z, (np.ndarray, Tensor)):
        return DatasetCollection.from_tensor(Z)
    return DatasetCollection(Z)


def assemble(
    theta: ParameterSet,
    simulator,
    m: int,
    rng: Optional[np.random.Generator] = None,
    expected_shape: Optional[Tuple[int, ...]] = None,
) -> DatasetCollection:
    """
    Simulate one dataset of m replicates per parameter vector.

    The assembler performs no randomness itself; ``rng`` is forwarded to the
    simulator.

    Args:
        theta: ParameterSet of size K
        simulator: Object with ``simulate(theta, m, rng)`` or a plain callable
                   with the same signature
        m: Number of replicates per dataset
        rng: Random generator handed to the simulator
        expected_shape: Per-replicate shape required by the estimator

    Returns:
        DatasetCollection of size K, index-aligned with ``theta``

    Raises:
        CardinalityMismatchError: If the simulator returns a number of
            datasets other than K, or datasets without exactly m replicates.
        ShapeMismatchError: If replicate shapes are inconsistent, or differ
            from ``expected_shape``.
    """
    if m < 1:
        raise ValueError(f"m must be a positive integer, got {m}")

    simulate = getattr(simulator, "simulate", simulator)
    Z = as_collection(simulate(theta, m, rng))

    if len(Z) != len(theta):
        raise CardinalityMismatchError(
            f"Simulator returned {len(Z)} datasets for {len(theta)} parameter vectors"
        )
    wrong = [i for i, count in enumerate(Z.replicate_counts) if count != m]
    if wrong:
        raise CardinalityMismatchError(
            f"{len(wrong)} dataset(s) do not have m={m} replicates "
            f"(dataset {wrong[0]} has {Z.replicate_counts[wrong[0]]})"
        )
    if expected_shape is not None and Z.feature_shape != tuple(expected_shape):
        raise ShapeMismatchError(
            f"Simulated replicate shape {Z.feature_shape} does not match the "
            f"estimator input shape {tuple(expected_shape)}"
        )
    return Z


class ReplicateDataset(torch.utils.data.Dataset):
    """PyTorch Dataset pairing each dataset with its parameter vector."""

    def __init__(self, theta: ParameterSet, Z: DatasetCollection):
        """
        Args:
            theta: ParameterSet of size K
            Z: DatasetCollection of size K
        """
        if len(theta) != len(Z):
            raise CardinalityMismatchError(
                f"{len(theta)} parameter vectors but {len(Z)} datasets"
            )
        self.theta = theta
        self.Z = Z

    def __len__(self) -> int:
        return len(self.Z)

    def __getitem__(self, idx: int) -> Tuple[Tensor, Tensor]:
        """
        Returns:
            replicates: Shape (m, *feature_shape)
            params: Shape (p,)
        """
        return self.Z[idx], self.theta[idx]


def collate_replicates(batch):
    """
    Collate (replicates, params) pairs into a minibatch.

    Replicates are stacked into a dense (batch, m, *feature_shape) tensor
    when all m agree and kept as a list of tensors otherwise.
    """
    replicates, params = zip(*batch)
    params = torch.stack(params, dim=0)
    if len({z.shape[0] for z in replicates}) == 1:
        return torch.stack(replicates, dim=0), params
    return list(replicates), params
