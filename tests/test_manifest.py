"""Unit tests for frame metadata manifests.

Test Categories:
1. build_manifest: key order, value types, shadowing and type checks
2. FrameManifest views: custom entries, JSON-safe dict
3. FITS header translation via astropy
4. export_frame and the ManifestSink protocol
"""

import json
import math
from datetime import datetime

import pytest
from astropy.io import fits

from cameraunit.data import (
    STANDARD_KEYS,
    FrameManifest,
    ManifestSink,
    MetadataKey,
    build_manifest,
    export_frame,
)
from cameraunit.errors import InvalidParameterError
from cameraunit.frame import CaptureTimestamp, Frame
from cameraunit.types import ROI, ExposureSetting, PixelFormat
from tests.conftest import EPOCH
from tests.helpers import assert_implements_protocol


def make_frame(temperature: float = -10.0, **metadata) -> Frame:
    """4x3 MONO16 frame from a 2x-binned ROI at (16, 8)."""
    return Frame(
        data=bytes(4 * 3 * 2),
        pixel_format=PixelFormat.MONO16,
        roi=ROI(16, 8, 8, 6, 2, 2),
        exposure=ExposureSetting(duration=30.0, gain=120, offset=10),
        timestamp=CaptureTimestamp(monotonic=5.0, wall=EPOCH),
        temperature=temperature,
        camera_name="ASI533MM Pro",
        metadata=metadata,
    )


class RecordingSink:
    """ManifestSink that keeps what it was given."""

    def __init__(self) -> None:
        self.written: list[tuple[Frame, FrameManifest]] = []

    def write(self, frame: Frame, manifest: FrameManifest) -> None:
        self.written.append((frame, manifest))


class TestBuildManifest:
    """Tests for manifest construction."""

    def test_standard_keys_first_in_order(self):
        """Verifies standard keys lead, then frame metadata, then caller keys.

        Arrangement:
        1. Frame carrying OBJECT metadata.
        2. Caller keys FILTER and SEQUENCE.

        Action:
        Builds the manifest.

        Assertion Strategy:
        Key order is the MetadataKey order followed by OBJECT, FILTER,
        SEQUENCE.
        """
        manifest = build_manifest(make_frame(OBJECT="M42"), {"FILTER": "Ha", "SEQUENCE": 4})
        expected = [key.value for key in MetadataKey] + ["OBJECT", "FILTER", "SEQUENCE"]
        assert list(manifest) == expected

    def test_standard_values_and_types(self):
        """Verifies each standard entry has the contracted type and value."""
        manifest = build_manifest(make_frame())
        assert manifest["EXPOSURE"] == 30.0
        assert isinstance(manifest["EXPOSURE"], float)
        assert manifest["GAIN"] == 120
        assert isinstance(manifest["GAIN"], int)
        assert manifest["OFFSET"] == 10
        assert manifest["TEMPERATURE"] == -10.0
        assert manifest["TIMESTAMP"] == EPOCH
        assert manifest["ROI"] == (16, 8, 8, 6)
        assert manifest["BINNING"] == (2, 2)
        assert manifest["PIXEL_FORMAT"] == "mono16"
        assert manifest["CAMERA"] == "ASI533MM Pro"

    def test_caller_key_overrides_frame_key_in_place(self):
        """Verifies a caller key replaces a frame key without moving it."""
        manifest = build_manifest(make_frame(OBJECT="M42", FILTER="L"), {"OBJECT": "M43"})
        assert manifest["OBJECT"] == "M43"
        assert list(manifest.custom) == ["OBJECT", "FILTER"]

    @pytest.mark.parametrize("key", ["EXPOSURE", "gain", "Timestamp", "CAMERA"])
    def test_shadowing_standard_key_raises(self, key):
        """Verifies custom keys may not shadow standard ones, in any case."""
        with pytest.raises(InvalidParameterError, match="shadows"):
            build_manifest(make_frame(), {key: 1})

    def test_frame_metadata_shadowing_raises(self):
        """Verifies the check also applies to metadata attached to the frame."""
        frame = make_frame(TEMPERATURE=5)
        with pytest.raises(InvalidParameterError, match="shadows"):
            build_manifest(frame)

    @pytest.mark.parametrize(
        "key",
        ["EXPTIME", "date-obs", "Instrume", "CCD-TEMP", "XBINNING", "PROGRAM", "NAXIS2"],
    )
    def test_key_colliding_with_fits_card_raises(self, key):
        """Verifies custom keys may not overwrite a card the header writes.

        Business context:
        A caller key named EXPTIME or DATE-OBS would otherwise replace the
        real exposure or timestamp in the persisted header.
        """
        with pytest.raises(InvalidParameterError, match="FITS card"):
            build_manifest(make_frame(), {key: 999.0})

    @pytest.mark.parametrize(
        "custom",
        [
            {"": "x"},
            {"OBSERVER": None},
            {"OBSERVER": {"a": 1}},
            {"SKYQ": math.nan},
            {"SKYQ": math.inf},
        ],
    )
    def test_invalid_custom_pair_raises(self, custom):
        """Verifies keys must be non-empty and values finite str, int or float."""
        with pytest.raises(InvalidParameterError):
            build_manifest(make_frame(), custom)

    def test_manifest_is_read_only(self):
        """Verifies the manifest cannot be modified after construction."""
        manifest = build_manifest(make_frame())
        with pytest.raises(TypeError):
            manifest["GAIN"] = 0  # type: ignore[index]
        assert STANDARD_KEYS == set(manifest)


class TestManifestViews:
    """Tests for derived representations."""

    def test_to_dict_is_json_safe(self):
        """Verifies to_dict output serializes with the json module.

        Assertion Strategy:
        - TIMESTAMP becomes an ISO 8601 string with UTC offset.
        - ROI and BINNING become lists.
        - Custom values pass through.
        """
        data = build_manifest(make_frame(), {"AIRMASS": 1.31}).to_dict()
        decoded = json.loads(json.dumps(data))
        assert decoded["TIMESTAMP"] == "2026-03-14T22:00:00+00:00"
        assert decoded["ROI"] == [16, 8, 8, 6]
        assert decoded["BINNING"] == [2, 2]
        assert decoded["AIRMASS"] == 1.31

    def test_to_dict_unknown_temperature_is_null(self):
        """Verifies a NaN temperature maps to None."""
        manifest = build_manifest(make_frame(temperature=math.nan))
        assert math.isnan(manifest["TEMPERATURE"])
        assert manifest.to_dict()["TEMPERATURE"] is None

    def test_timestamp_is_aware_datetime(self):
        """Verifies TIMESTAMP keeps its datetime type in the manifest."""
        timestamp = build_manifest(make_frame())["TIMESTAMP"]
        assert isinstance(timestamp, datetime)
        assert timestamp.tzinfo is not None


class TestFitsHeader:
    """Tests for FrameManifest.to_fits_header()."""

    def test_standard_cards(self):
        """Verifies standard keys map onto the usual FITS cards.

        Arrangement:
        1. 30 s exposure at gain 120, offset 10, -10 C, 2x2 binned ROI.

        Assertion Strategy:
        Card values match the frame; DATE-OBS is astropy ISOT in UTC.
        """
        header = build_manifest(make_frame()).to_fits_header()
        assert isinstance(header, fits.Header)
        assert header["EXPTIME"] == 30.0
        assert header["GAIN"] == 120
        assert header["OFFSET"] == 10
        assert header["CCD-TEMP"] == -10.0
        assert header["DATE-OBS"] == "2026-03-14T22:00:00.000"
        assert header["INSTRUME"] == "ASI533MM Pro"
        assert (header["XORGSUBF"], header["YORGSUBF"]) == (16, 8)
        assert (header["ROIWIDTH"], header["ROIHEIGH"]) == (8, 6)
        assert (header["XBINNING"], header["YBINNING"]) == (2, 2)
        assert header["PIXFMT"] == "mono16"

    def test_unknown_temperature_omitted(self):
        """Verifies no CCD-TEMP card is written for a NaN temperature."""
        header = build_manifest(make_frame(temperature=math.nan)).to_fits_header()
        assert "CCD-TEMP" not in header

    def test_custom_keys(self):
        """Verifies custom keys become cards, long ones as HIERARCH.

        Assertion Strategy:
        - 'object' is upper-cased into a plain OBJECT card.
        - 'focuser_position' exceeds eight characters: HIERARCH card.
        """
        header = build_manifest(
            make_frame(), {"object": "M42", "focuser_position": 15230}
        ).to_fits_header()
        assert header["OBJECT"] == "M42"
        assert header["HIERARCH FOCUSER_POSITION"] == 15230

    def test_standard_cards_survive_custom_keys(self):
        """Verifies custom keys never change the exposure or timestamp cards."""
        header = build_manifest(
            make_frame(), {"OBJECT": "M42", "EXPOSURE_NOTE": "dark"}
        ).to_fits_header()
        assert header["EXPTIME"] == 30.0
        assert header["DATE-OBS"] == "2026-03-14T22:00:00.000"
        assert header["HIERARCH EXPOSURE_NOTE"] == "dark"

    def test_keys_differing_only_in_case_raise(self):
        """Verifies two keys landing on one card are reported, not overwritten."""
        manifest = build_manifest(make_frame(), {"object": "M42", "OBJECT": "M43"})
        with pytest.raises(InvalidParameterError, match="both map to FITS card OBJECT"):
            manifest.to_fits_header()


class TestExportFrame:
    """Tests for handing frames to a persistence sink."""

    def test_recording_sink_implements_protocol(self):
        """Verifies the test sink satisfies ManifestSink."""
        assert_implements_protocol(RecordingSink(), ManifestSink)

    def test_sink_receives_frame_and_manifest(self):
        """Verifies export_frame writes once and returns the manifest."""
        sink = RecordingSink()
        frame = make_frame()
        manifest = export_frame(frame, sink, {"OBJECT": "NGC 7000"})
        assert sink.written == [(frame, manifest)]
        assert manifest["OBJECT"] == "NGC 7000"

    def test_invalid_manifest_does_not_reach_sink(self):
        """Verifies the sink is not called when the manifest is invalid."""
        sink = RecordingSink()
        with pytest.raises(InvalidParameterError):
            export_frame(make_frame(), sink, {"GAIN": 3})
        assert sink.written == []

    def test_sink_errors_propagate(self):
        """Verifies sink failures reach the caller unchanged."""

        class FullDisk:
            def write(self, frame: Frame, manifest: FrameManifest) -> None:
                raise OSError("No space left on device")

        with pytest.raises(OSError, match="No space"):
            export_frame(make_frame(), FullDisk())
