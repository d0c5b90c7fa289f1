"""Kita - Kubernetes Ingress TLS certificates via ACME."""

from kita.accounts import AccountManager
from kita.client import AcmeClient
from kita.controller import ReconcileController
from kita.directory import DirectoryCache
from kita.orchestrator import CertificateOrchestrator
from kita.renewal import RenewalEvaluator, RenewalScheduler
from kita.solver import ChallengeSolver

__all__ = [
    "AccountManager",
    "AcmeClient",
    "CertificateOrchestrator",
    "ChallengeSolver",
    "DirectoryCache",
    "ReconcileController",
    "RenewalEvaluator",
    "RenewalScheduler",
]
__version__ = "0.1.0"
