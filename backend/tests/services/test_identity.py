from backend.app.db import models
from backend.app.services.identity import (
    PLACEHOLDER_PREFIX,
    is_placeholder_vin,
    make_placeholder_vin,
    resolve_vehicle,
    upgrade_vin,
)

VIN = "WP0AA2995SS320123"


def test_placeholder_vins_are_unique_and_recognised():
    first, second = make_placeholder_vin(), make_placeholder_vin()

    assert first != second
    assert first.startswith(PLACEHOLDER_PREFIX)
    assert is_placeholder_vin(first)
    assert not is_placeholder_vin(VIN)


def test_resolve_vehicle_reuses_vehicle_by_vin(database, make_record):
    with database.session_scope() as session:
        first = resolve_vehicle(session, make_record(url="a", vin=VIN, mileage=42_000), "Porsche", "911")
        second = resolve_vehicle(session, make_record(url="b", vin=VIN.lower()), "Porsche", "911")
        vehicle = session.get(models.Vehicle, first)

        assert first == second
        assert vehicle.vin == VIN
        assert vehicle.year == 1995
        assert vehicle.mileage == 42_000
        assert (vehicle.make, vehicle.model) == ("Porsche", "911")


def test_resolve_vehicle_without_vin_always_creates_placeholder(database, make_record):
    with database.session_scope() as session:
        first = resolve_vehicle(session, make_record(url="a"), "Porsche", "911")
        second = resolve_vehicle(session, make_record(url="a", vin="not-a-vin"), "Porsche", "911")

        assert first != second
        assert is_placeholder_vin(session.get(models.Vehicle, first).vin)


def test_upgrade_vin_never_replaces_a_real_vin(database, make_search, add_listing):
    listing_id = add_listing(make_search(), url="u1", vin=VIN)

    with database.session_scope() as session:
        listing = session.get(models.Listing, listing_id)
        assert upgrade_vin(session, listing, "1HGCM82633A004352") is False
        assert session.get(models.Vehicle, listing.vehicle_id).vin == VIN


def test_upgrade_vin_leaves_listing_on_placeholder_when_owner_already_listed(database, make_search, add_listing):
    search_id = make_search()
    add_listing(search_id, url="real", source_site="bat", vin=VIN)
    placeholder_listing = add_listing(search_id, url="dupe", source_site="bat")

    with database.session_scope() as session:
        listing = session.get(models.Listing, placeholder_listing)
        before = listing.vehicle_id
        assert upgrade_vin(session, listing, VIN) is False
        assert listing.vehicle_id == before
        assert is_placeholder_vin(session.get(models.Vehicle, before).vin)
