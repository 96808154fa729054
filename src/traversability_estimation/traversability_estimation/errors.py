#
# Copyright (c) 2022, Takahiro Miki. All rights reserved.
# Licensed under the MIT license. See LICENSE file in the project root for details.
#
"""Failures raised by the update and query layers."""


class TraversabilityError(Exception):
    """Base class for every failure surfaced by this package."""


class TransformUnavailable(TraversabilityError):
    """No valid transform between the requested frames."""


class SourceUnreachable(TraversabilityError):
    """The remote elevation source did not come up in time."""


class SourceCallFailed(TraversabilityError):
    """The remote elevation source was reached but the call failed."""


class RecomputeFailed(TraversabilityError):
    """The engine could not compute traversability."""


class EmptyBatchRequest(TraversabilityError):
    """A footprint batch request carried no paths."""


class FootprintCheckFailed(TraversabilityError):
    """A single footprint path could not be evaluated."""


class PartialOverlapFailure(TraversabilityError):
    """The requested submap is not fully inside the available grid."""


class UnknownLayer(TraversabilityError):
    """A requested layer does not exist in the grid."""


class ConfigReloadFailed(TraversabilityError):
    """Filter or footprint configuration could not be reloaded."""


class EngineNotReady(TraversabilityError):
    """The traversability map was not computed before the wait timed out."""


class MapStoreError(TraversabilityError):
    """Persisting or restoring a map failed."""
