from pathlib import Path

import pytest

from ems_pipeline.config import LocationInfo, PipelineConfig

SAMPLE_EMS = """\
H|EST-1001|CLM-778899|03/14/2024|2024-03-21|open|SafeDrive DRP
V|1G1ZD5ST0LF012345|2020|CHEV|MALIBU|LT|42150|Silver|Sedan|1.5L|Automatic
I|Acme Mutual|POL-55|CLM-778899|500.00|Collision
A|Dana Reyes|555-201-3344|dana.reyes@acme.example|Acme Mutual
L|1|REP|Front Bumper|BMP-001|1|2.5|65|162.50|45.00|207.50|Exterior|Bumper|
L|2|R|Headlamp Assy LH|HL-220|1|0.8|65|52.00|310.00||Lighting|Headlamp|OEM only
P|HL-220|Headlamp Assy LH|OEM-HL-220||349.99|310.00|In Stock|Dealer|Lighting|Left headlamp
N|general|Customer wants OEM parts|03/14/2024|Dana
D|Front|Moderate|Bumper cover cracked|REP
R|PAINT|Refinish bumper|1.5|B|Y
"""


@pytest.fixture
def sample_bytes():
    return SAMPLE_EMS.encode()


@pytest.fixture
def config(tmp_path: Path) -> PipelineConfig:
    exports = tmp_path / "exports"
    exports.mkdir()
    return PipelineConfig(
        export_paths=[exports],
        processed_path=tmp_path / "processed",
        logs_path=tmp_path / "logs",
        enable_ocr=False,
        stability_seconds=0.0,
        poll_interval_seconds=0.01,
        log_to_file=False,
        location=LocationInfo(shop_name="Main Street Collision", shop_id="MS-01",
                              computer_name="estimator-1"),
    )


@pytest.fixture
def export_dir(config) -> Path:
    return config.export_paths[0]
