from multifragreg import meta
from multifragreg.api import load_poses_xml, measure_registration, save_poses_xml
from multifragreg.observer import DefaultObserver, Observer
from multifragreg.registration import MultiFragmentRegistration
from multifragreg.solver import ObjectiveDeltaStopStrategy, solve_least_squares_lm

__all__ = [
    "meta",
    "MultiFragmentRegistration",
    "Observer",
    "DefaultObserver",
    "ObjectiveDeltaStopStrategy",
    "solve_least_squares_lm",
    "save_poses_xml",
    "load_poses_xml",
    "measure_registration",
]
