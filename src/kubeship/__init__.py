"""Kubeship: build, apply and tear down Kubernetes/OpenShift resources.

Applies generated manifests with create/update/recreate semantics, drives
OpenShift binary builds to completion, cascades undeploys to dependent
Builds/BuildConfigs, and offers debug, port-forward and pod-log helpers.
"""

import logging

from kubeship._version import __version__
from kubeship.models import ApplyOutcome, ApplyResult, BuildServiceConfig, RecreateMode

__all__ = ["ApplyOutcome", "ApplyResult", "BuildServiceConfig", "RecreateMode", "__version__"]

logging.getLogger(__name__).addHandler(logging.NullHandler())
