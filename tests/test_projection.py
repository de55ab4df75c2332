"""Tests for the projection registry, coordinate transforms and datum shifts."""

import math

import pytest

from geotoolkit.error_handler import ProjectionError
from geotoolkit.projection.datum_transform import (
    AIRY_1830,
    WGS84,
    DatumTransform,
    HelmertParameters,
    ecef_to_geodetic,
    geodetic_to_ecef,
)
from geotoolkit.projection.projection_engine import (
    UTM,
    CRSDefinition,
    ProjectionEngine,
    ProjectionRegistry,
    WebMercator,
    normalize_code,
    utm_definition,
)

SAN_FRANCISCO = (-122.4194, 37.7749)


@pytest.fixture(scope="module")
def engine():
    """Projection engine over the default registry."""
    return ProjectionEngine(ProjectionRegistry.with_defaults())


class TestCodes:
    """Test CRS code parsing."""

    @pytest.mark.parametrize("code", ["EPSG:4326", "epsg:4326", "4326", 4326, " EPSG:04326 "])
    def test_normalize(self, code):
        """Test accepted spellings of a code."""
        assert normalize_code(code) == "EPSG:4326"

    @pytest.mark.parametrize("code", ["WGS84", "EPSG:", "EPSG:43a6", ""])
    def test_malformed(self, code):
        """Test that malformed codes raise ProjectionError."""
        with pytest.raises(ProjectionError, match="Malformed CRS code"):
            normalize_code(code)


class TestRegistry:
    """Test registry contents and injection."""

    def test_default_contents(self):
        """Test the pre-seeded systems."""
        registry = ProjectionRegistry.with_defaults()
        assert len(registry) == 8 + 120
        for code in ("EPSG:4326", "EPSG:3857", "EPSG:4269", "EPSG:4267", "EPSG:4258",
                     "EPSG:5070", "EPSG:27700", "EPSG:4087", "EPSG:32601", "EPSG:32760"):
            assert registry.is_registered(code)
        assert registry.list_codes()[0] == "EPSG:3857"
        assert registry.get("4326").is_geographic
        assert registry.get(32610).name == "WGS 84 / UTM zone 10N"

    def test_unregistered(self):
        """Test lookups of unknown codes."""
        registry = ProjectionRegistry.with_defaults()
        with pytest.raises(ProjectionError, match="Unregistered CRS: EPSG:9999") as exc_info:
            registry.get("EPSG:9999")
        assert exc_info.value.metadata['code'] == "EPSG:9999"
        assert registry.is_registered("not a code") is False

    def test_isolated_registry(self):
        """Test an injected registry holding only what the caller registers."""
        registry = ProjectionRegistry()
        engine = ProjectionEngine(registry)
        with pytest.raises(ProjectionError):
            engine.transform((0, 0), "EPSG:4326", "EPSG:3857")

        registry.register(CRSDefinition("epsg:900913", "Google Mercator", "+proj=merc",
                                        "meters", WebMercator()))
        registry.register(utm_definition(33))
        assert registry.list_codes() == ["EPSG:32633", "EPSG:900913"]

        # Zone 33 false origin sits on its 15E central meridian
        x, y = engine.transform((500000.0, 0.0), "EPSG:32633", "EPSG:900913")
        assert x == pytest.approx(6378137.0 * math.radians(15.0), abs=1e-3)
        assert y == pytest.approx(0.0, abs=1e-6)
        lon, lat = engine.to_wgs84(engine.from_wgs84((15.0, 10.0), "EPSG:32633"), "EPSG:32633")
        assert lon == pytest.approx(15.0, abs=1e-9)
        assert lat == pytest.approx(10.0, abs=1e-9)

    def test_invalid_utm_zone(self):
        """Test UTM zone bounds."""
        with pytest.raises(ProjectionError, match="UTM zone"):
            UTM(61)


class TestTransforms:
    """Test known values and round trips."""

    def test_web_mercator_known_value(self, engine):
        """Test San Francisco in Web Mercator."""
        x, y = engine.transform(SAN_FRANCISCO, "EPSG:4326", "EPSG:3857")
        assert x == pytest.approx(-13627665.27, abs=0.5)
        assert y == pytest.approx(4547675.35, abs=0.5)

    def test_web_mercator_clamps_poles(self, engine):
        """Test that polar latitudes are clamped instead of diverging."""
        _, y = engine.transform((0, 90), "EPSG:4326", "EPSG:3857")
        assert math.isfinite(y)
        assert y == pytest.approx(20037508.34, abs=1.0)

    def test_utm_central_meridian(self, engine):
        """Test UTM false easting and the meridian arc scale."""
        assert engine.transform((3, 0), "EPSG:4326", "EPSG:32631") == pytest.approx((500000, 0),
                                                                                   abs=1e-6)
        easting, northing = engine.transform((3, 45), "EPSG:4326", "EPSG:32631")
        assert easting == pytest.approx(500000, abs=1e-6)
        assert northing == pytest.approx(4982950.4, abs=1.0)

    def test_utm_south_false_northing(self, engine):
        """Test the southern-hemisphere false northing."""
        _, northing = engine.transform((3, 0), "EPSG:4326", "EPSG:32731")
        assert northing == pytest.approx(10000000, abs=1e-6)

    def test_utm_san_francisco(self, engine):
        """Test a UTM zone 10N position."""
        easting, northing = engine.transform(SAN_FRANCISCO, "EPSG:4326", "EPSG:32610")
        assert easting == pytest.approx(551131, abs=5)
        assert northing == pytest.approx(4180999, abs=5)

    @pytest.mark.parametrize("code,origin,expected", [
        ("EPSG:27700", (-2.0, 49.0), (400000.0, -100000.0)),
        ("EPSG:5070", (-96.0, 23.0), (0.0, 0.0)),
        ("EPSG:4087", (180.0, 0.0), (20037508.342789244, 0.0)),
    ])
    def test_projection_origins(self, engine, code, origin, expected):
        """Test the natural origin of each national system."""
        assert engine.transform(origin, "EPSG:4326", code) == pytest.approx(expected, abs=1e-3)

    @pytest.mark.parametrize("point,code", [
        (SAN_FRANCISCO, "EPSG:3857"),
        (SAN_FRANCISCO, "EPSG:32610"),
        ((-100.0, 40.0), "EPSG:5070"),
        ((-70.0, -33.0), "EPSG:4087"),
        ((-1.5, 52.5), "EPSG:27700"),
        ((151.2, -33.9), "EPSG:32756"),
        ((-77.0, 39.0), "EPSG:4269"),
    ])
    def test_round_trip(self, engine, point, code):
        """Test transform(transform(p, A, B), B, A) is p within 1e-6 degrees."""
        projected = engine.transform(point, "EPSG:4326", code)
        back = engine.transform(projected, code, "EPSG:4326")
        assert back[0] == pytest.approx(point[0], abs=1e-6)
        assert back[1] == pytest.approx(point[1], abs=1e-6)

    def test_round_trip_between_projected_systems(self, engine):
        """Test composition via WGS84 between two projected systems."""
        utm = engine.transform(SAN_FRANCISCO, "EPSG:4326", "EPSG:32610")
        albers = engine.transform(utm, "EPSG:32610", "EPSG:5070")
        back = engine.transform(engine.transform(albers, "EPSG:5070", "EPSG:32610"),
                                "EPSG:32610", "EPSG:4326")
        assert back[:2] == pytest.approx(SAN_FRANCISCO, abs=1e-6)

    def test_z_carried_through(self, engine):
        """Test that elevation passes through unchanged."""
        result = engine.transform((10.0, 20.0, 123.5), "EPSG:4326", "EPSG:3857")
        assert len(result) == 3
        assert result[2] == 123.5

    def test_identity_transform(self, engine):
        """Test that equal source and target return the input."""
        assert engine.transform((1, 2), "4326", "EPSG:4326") == (1.0, 2.0)

    def test_transform_many(self, engine):
        """Test batch transformation."""
        coords = [(0, 0), (10, 10), (-10, -10)]
        result = engine.transform_many(coords, "EPSG:4326", "EPSG:3857")
        assert len(result) == 3
        assert result[0] == pytest.approx((0, 0), abs=1e-6)

    def test_transform_many_unknown_code(self, engine):
        """Test that unknown codes fail before any work."""
        with pytest.raises(ProjectionError):
            engine.transform_many([(0, 0)], "EPSG:4326", "EPSG:1")

    @pytest.mark.parametrize("lon,lat,expected", [
        (-122.4194, 37.7749, "EPSG:32610"),
        (151.2, -33.9, "EPSG:32756"),
        (-180.0, 10.0, "EPSG:32601"),
        (180.0, 10.0, "EPSG:32660"),
    ])
    def test_utm_zone_for(self, lon, lat, expected):
        """Test zone selection including the antimeridian."""
        assert ProjectionEngine.utm_zone_for(lon, lat) == expected


class TestDatumTransform:
    """Test ECEF conversion and Helmert shifts."""

    @pytest.mark.parametrize("lon,lat,h", [
        (0.0, 0.0, 0.0),
        (-122.4194, 37.7749, 52.0),
        (151.2, -33.9, -20.0),
        (10.0, 80.0, 1000.0),
    ])
    def test_ecef_round_trip(self, lon, lat, h):
        """Test geodetic -> ECEF -> geodetic."""
        back = ecef_to_geodetic(*geodetic_to_ecef(lon, lat, h))
        assert back[0] == pytest.approx(lon, abs=1e-9)
        assert back[1] == pytest.approx(lat, abs=1e-8)
        assert back[2] == pytest.approx(h, abs=1e-3)

    def test_ecef_equator(self):
        """Test the semi-major axis on the equator."""
        x, y, z = geodetic_to_ecef(0, 0, 0, WGS84)
        assert x == pytest.approx(6378137.0)
        assert y == pytest.approx(0.0, abs=1e-6)
        assert z == pytest.approx(0.0, abs=1e-6)

    def test_osgb36_shift_magnitude(self):
        """Test that the WGS84 to OSGB36 shift in London is around a hundred meters."""
        datum = DatumTransform.with_defaults()
        lon, lat, _ = datum.transform(-0.1276, 51.5072, 0.0, "WGS84->OSGB36")
        shift = math.hypot(lon + 0.1276, lat - 51.5072)
        assert 0.0005 < shift < 0.005

    def test_inverse_round_trip(self):
        """Test that a shift followed by its registered inverse returns close to the start."""
        datum = DatumTransform.with_defaults()
        shifted = datum.transform(-0.1276, 51.5072, 10.0, "WGS84->OSGB36")
        back = datum.transform(*shifted, "OSGB36->WGS84")
        assert back[0] == pytest.approx(-0.1276, abs=1e-6)
        assert back[1] == pytest.approx(51.5072, abs=1e-6)
        assert back[2] == pytest.approx(10.0, abs=0.1)

    def test_inverse_parameters(self):
        """Test that inverting swaps ellipsoids and negates parameters."""
        params = HelmertParameters(1, 2, 3, 0.1, 0.2, 0.3, 4.0, source=WGS84, target=AIRY_1830)
        inverse = params.inverse()
        assert (inverse.tx, inverse.ry, inverse.s) == (-1, -0.2, -4.0)
        assert inverse.source == AIRY_1830
        assert inverse.target == WGS84

    def test_registered_names(self):
        """Test default transformations and unknown names."""
        datum = DatumTransform.with_defaults()
        assert "NAD27->WGS84" in datum.list_transforms()
        assert "WGS84->ED50" in datum.list_transforms()
        with pytest.raises(ProjectionError, match="Unknown datum transformation"):
            datum.get("WGS84->MARS2000")

    def test_zero_parameters_are_identity(self):
        """Test that an all-zero transform on one ellipsoid is the identity."""
        datum = DatumTransform({'same': HelmertParameters(0, 0, 0)})
        lon, lat, h = datum.transform(12.5, -41.0, 100.0, 'same')
        assert (lon, lat) == pytest.approx((12.5, -41.0), abs=1e-9)
        assert h == pytest.approx(100.0, abs=1e-3)
