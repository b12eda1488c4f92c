"""Admission gate for NdbCluster resources.

Decision logic lives in ``controller``; ``review`` adapts it to the
AdmissionReview wire format and ``server`` exposes it over HTTP.
"""

from ndb_operator.admission.controller import AdmissionController, NdbAdmissionController, apply_patch
from ndb_operator.admission.review import AdmissionError, AdmissionReviewer, build_response

__all__ = [
    "AdmissionController",
    "AdmissionError",
    "AdmissionReviewer",
    "NdbAdmissionController",
    "apply_patch",
    "build_response",
]
