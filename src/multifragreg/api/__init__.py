from multifragreg.api.measurement import measure_registration, write_measurement_xml
from multifragreg.api.pose_io import load_csv_values, load_perspective_csv, load_poses_xml, save_poses_xml

__all__ = [
    "load_csv_values",
    "load_perspective_csv",
    "save_poses_xml",
    "load_poses_xml",
    "measure_registration",
    "write_measurement_xml",
]
