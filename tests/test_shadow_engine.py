import math
import threading
import unittest
import warnings
from unittest import mock

from shapely.geometry import Polygon, box

from building_heights import BuildingHeightManager
from engine_fixtures import (
    DEC_NOON,
    FRAME,
    JUNE_NOON,
    LAT,
    LON,
    NORTH_BOUNDS,
    make_building,
    make_patio,
)
from errors import ComputationError
from models import Building, HeightSource, SolarPosition
from shadow_engine import (
    BuildingIndex,
    ShadowCandidate,
    ShadowCastingEngine,
    cast_shadows,
    project_shadow,
    repair_polygon,
    shadow_direction,
    shadow_length,
)
from solar_position import solar_position


def _engine(buildings):
    heights = BuildingHeightManager()
    return ShadowCastingEngine(BuildingIndex(buildings, heights), heights)


def _sun(elevation, azimuth=180.0):
    return SolarPosition(
        timestamp=JUNE_NOON,
        latitude=LAT,
        longitude=LON,
        elevation=elevation,
        azimuth=azimuth,
        is_visible=elevation > 0,
    )


class ShadowGeometryTests(unittest.TestCase):
    def test_local_frame_round_trip_without_warnings(self):
        square = box(0, 0, 10, 10)
        with warnings.catch_warnings():
            warnings.simplefilter("error", DeprecationWarning)
            wgs = FRAME.to_wgs(square)
            back = FRAME.to_metric(wgs)
        self.assertAlmostEqual(wgs.centroid.y, LAT, places=3)
        self.assertAlmostEqual(back.area, 100.0, places=3)
        for got, want in zip(back.bounds, square.bounds):
            self.assertAlmostEqual(got, want, places=4)

    def test_shadow_length(self):
        self.assertAlmostEqual(shadow_length(10.0, 50.0), 8.39, places=2)
        self.assertEqual(shadow_length(10.0, 90.0), 0.0)
        self.assertEqual(shadow_length(0.0, 30.0), 0.0)
        self.assertTrue(math.isinf(shadow_length(10.0, 0.0)))

    def test_shadow_length_shrinks_as_sun_rises(self):
        lengths = [shadow_length(10.0, el) for el in (5, 15, 30, 45, 60, 75, 89)]
        self.assertEqual(lengths, sorted(lengths, reverse=True))
        self.assertTrue(all(length >= 0 for length in lengths))

    def test_shadow_points_away_from_sun(self):
        self.assertEqual(shadow_direction(180.0), 0.0)
        self.assertEqual(shadow_direction(90.0), 270.0)

    def test_project_shadow_sweeps_footprint(self):
        footprint = box(0, 0, 10, 10)
        shadow = project_shadow(footprint, 10.0, sun_azimuth_deg=180.0, sun_elevation_deg=45.0)
        self.assertAlmostEqual(shadow.area, 200.0, places=3)
        self.assertAlmostEqual(shadow.bounds[3], 20.0, places=6)

    def test_zenith_sun_shadow_is_footprint(self):
        footprint = box(0, 0, 10, 10)
        shadow = project_shadow(footprint, 10.0, sun_azimuth_deg=0.0, sun_elevation_deg=90.0)
        self.assertAlmostEqual(shadow.area, 100.0, places=6)

    def test_long_shadows_are_capped(self):
        shadow = project_shadow(box(0, 0, 1, 1), 10.0, 180.0, 0.5, max_length_m=50.0)
        self.assertAlmostEqual(shadow.bounds[3], 51.0, places=6)

    def test_sun_below_horizon_casts_nothing(self):
        self.assertIsNone(project_shadow(box(0, 0, 10, 10), 10.0, 180.0, -2.0))

    def test_repair_rejects_degenerate_polygons(self):
        with self.assertRaises(ComputationError):
            repair_polygon(Polygon([(0, 0), (5, 0), (10, 0)]), entity_id="flat")
        bowtie = Polygon([(0, 0), (10, 10), (10, 0), (0, 10)])
        self.assertGreater(repair_polygon(bowtie).area, 0)

    def test_cast_shadows_skips_failing_candidates(self):
        patio = box(0, 0, 10, 10)
        good = ShadowCandidate("good", box(0, -15, 10, -5), 10.0, HeightSource.SURVEYED)
        bad = ShadowCandidate("bad", Polygon([(0, -8), (5, -8), (10, -8)]), 10.0, HeightSource.OSM)
        result = cast_shadows(patio, [good, bad], _sun(45.0))
        self.assertEqual(result.failed_building_ids, ("bad",))
        self.assertEqual(result.contributing_building_ids, ("good",))
        self.assertAlmostEqual(result.shaded_fraction, 0.5, places=3)

    def test_no_buildings_means_no_shade(self):
        result = cast_shadows(box(0, 0, 10, 10), [], _sun(30.0))
        self.assertEqual(result.shaded_fraction, 0.0)


class ShadowCastingEngineTests(unittest.TestCase):
    def test_summer_noon_building_south_shades_patio_edge(self):
        engine = _engine([make_building()])
        result = engine.compute(make_patio(), solar_position(LAT, LON, JUNE_NOON))
        # 10 m at ~55.7 deg: ~6.8 m shadow across a 5 m gap.
        self.assertGreater(result.shaded_fraction, 0.1)
        self.assertLess(result.shaded_fraction, 0.3)
        self.assertEqual(result.contributing_building_ids, ("b-south",))

    def test_winter_noon_building_south_shades_whole_patio(self):
        engine = _engine([make_building()])
        result = engine.compute(make_patio(), solar_position(LAT, LON, DEC_NOON))
        self.assertGreater(result.shaded_fraction, 0.9)

    def test_building_north_never_shades_at_noon(self):
        engine = _engine([make_building("b-north", bounds=NORTH_BOUNDS)])
        for when in (JUNE_NOON, DEC_NOON):
            result = engine.compute(make_patio(), solar_position(LAT, LON, when))
            self.assertEqual(result.shaded_fraction, 0.0)

    def test_invalid_building_is_excluded_not_fatal(self):
        flat = Building(
            id="b-flat",
            footprint=FRAME.to_wgs(Polygon([(2, -8), (8, -8), (8, -8), (2, -8)])),
            height_m=10.0,
            height_source=HeightSource.OSM,
        )
        clean = _engine([make_building()]).compute(make_patio(), solar_position(LAT, LON, JUNE_NOON))
        mixed = _engine([make_building(), flat]).compute(make_patio(), solar_position(LAT, LON, JUNE_NOON))
        self.assertIn("b-flat", mixed.failed_building_ids)
        self.assertAlmostEqual(mixed.shaded_fraction, clean.shaded_fraction, places=6)

    def test_sun_not_visible_reports_full_shade_without_geometry(self):
        engine = _engine([make_building()])
        result = engine.compute(make_patio(), _sun(-5.0))
        self.assertEqual(result.shaded_fraction, 1.0)
        self.assertEqual(result.candidate_count, 0)

    def test_distant_buildings_are_not_candidates(self):
        far = make_building("b-far", bounds=(0, -400, 10, -390), height_m=10.0)
        engine = _engine([make_building(), far])
        prepared = engine.prepare(make_patio())
        ids = {c.building_id for c in engine.candidates_for(prepared, engine.search_radius(55.0))}
        self.assertEqual(ids, {"b-south"})

    def test_search_radius_is_capped(self):
        engine = _engine([make_building(height_m=50.0)])
        self.assertLessEqual(engine.search_radius(1.0), engine.max_shadow_distance_m + 2.0)
        self.assertEqual(engine.search_radius(-1.0), 0.0)

    def test_weakest_height_source_near_patio(self):
        heuristic = make_building("b-guess", bounds=(15, -15, 25, -5), height_m=None, source=None)
        engine = _engine([make_building(), heuristic])
        self.assertEqual(engine.weakest_source_near(make_patio()), HeightSource.HEURISTIC)
        self.assertIsNone(_engine([]).weakest_source_near(make_patio()))

    def test_compute_many_isolates_patio_failures(self):
        engine = _engine([make_building()])
        real_compute = engine.compute

        def _compute(patio, solar):
            if patio.id == "broken":
                raise ComputationError("patio geometry unusable", entity_id=patio.id)
            return real_compute(patio, solar)

        with mock.patch.object(engine, "compute", side_effect=_compute):
            results, errors = engine.compute_many(
                [make_patio(), make_patio("broken")], solar_position(LAT, LON, JUNE_NOON)
            )
        self.assertEqual(set(results), {"patio-1"})
        self.assertEqual(set(errors), {"broken"})

    def test_concurrent_workers_project_each_footprint_once(self):
        engine = _engine([make_building(), make_building("b-north", bounds=NORTH_BOUNDS)])
        prepared = engine.prepare(make_patio())
        barrier = threading.Barrier(8)
        results = []

        def _worker():
            barrier.wait()
            results.append(engine.candidates_for(prepared, 100.0))

        with mock.patch.object(prepared.frame, "to_metric", wraps=prepared.frame.to_metric) as to_metric:
            threads = [threading.Thread(target=_worker) for _ in range(8)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()

        self.assertEqual(to_metric.call_count, 2)
        self.assertEqual(set(prepared.footprints), {"b-south", "b-north"})
        self.assertTrue(all(len(found) == 2 for found in results))

    def test_patio_edit_invalidates_prepared_frame(self):
        engine = _engine([make_building()])
        first = engine.prepare(make_patio())
        engine.invalidate("patio-1")
        second = engine.prepare(make_patio())
        self.assertIsNot(first, second)


if __name__ == "__main__":
    unittest.main()
