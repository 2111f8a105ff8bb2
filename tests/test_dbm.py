import logging

from pyln.wtclient import crypto
from pyln.wtclient.dbm import DBM
from pyln.wtclient.tower import MisbehaviorProof, TowerStatus

from helpers import get_random_appointment, sign_receipt

TOWER_ID = "02" + "11" * 32
OTHER_TOWER_ID = "03" + "22" * 32


def add_tower(dbm, tower_id=TOWER_ID, status=TowerStatus.REACHABLE):
    dbm.store_tower_record(tower_id, "http://localhost:9814", 100, 1000, status)


def test_user_key(dbm):
    assert dbm.load_user_key() is None

    sk, _ = crypto.generate_keypair()
    dbm.store_user_key(sk.serializeCompressed())
    assert dbm.load_user_key() == sk.serializeCompressed()


def test_store_load_tower(dbm):
    assert dbm.load_tower_record(TOWER_ID) is None

    add_tower(dbm)
    tower = dbm.load_tower_record(TOWER_ID)
    assert tower.net_addr == "http://localhost:9814"
    assert tower.available_slots == 100
    assert tower.subscription_expiry == 1000
    assert tower.status is TowerStatus.REACHABLE
    assert tower.appointments == {}
    assert tower.pending_appointments == []
    assert tower.misbehaving_proof is None

    # Storing again updates the record
    dbm.store_tower_record(TOWER_ID, "http://otherhost:9814", 200, 2000, TowerStatus.UNREACHABLE)
    tower = dbm.load_tower_record(TOWER_ID)
    assert tower.net_addr == "http://otherhost:9814"
    assert tower.available_slots == 200
    assert tower.status is TowerStatus.UNREACHABLE
    assert dbm.load_tower_ids() == [TOWER_ID]


def test_update_status_and_address(dbm):
    add_tower(dbm)
    dbm.update_tower_status(TOWER_ID, TowerStatus.TEMPORARY_UNREACHABLE)
    dbm.update_net_addr(TOWER_ID, "http://newhost:1234")

    tower = dbm.load_tower_record(TOWER_ID)
    assert tower.status is TowerStatus.TEMPORARY_UNREACHABLE
    assert tower.net_addr == "http://newhost:1234"


def test_pending_appointments_keep_insertion_order(dbm):
    add_tower(dbm)
    appointments = [get_random_appointment() for _ in range(10)]
    for appointment in appointments:
        dbm.store_pending_appointment(TOWER_ID, appointment)
    # Duplicates are ignored
    dbm.store_pending_appointment(TOWER_ID, appointments[0])

    assert dbm.load_pending_appointments(TOWER_ID) == appointments

    dbm.delete_pending_appointment(TOWER_ID, appointments[3].locator)
    assert dbm.load_pending_appointments(TOWER_ID) == appointments[:3] + appointments[4:]


def test_appointments_shared_by_towers(dbm):
    add_tower(dbm)
    add_tower(dbm, OTHER_TOWER_ID)
    appointment = get_random_appointment()
    dbm.store_pending_appointment(TOWER_ID, appointment)
    dbm.store_pending_appointment(OTHER_TOWER_ID, appointment)

    dbm.delete_pending_appointment(TOWER_ID, appointment.locator)
    assert dbm.load_pending_appointments(TOWER_ID) == []
    assert dbm.load_pending_appointments(OTHER_TOWER_ID) == [appointment]


def test_store_receipt_updates_slots(dbm):
    add_tower(dbm)
    sk, _ = crypto.generate_keypair()
    appointment = get_random_appointment()
    receipt = sign_receipt("usersig", 42, sk)

    dbm.store_appointment_receipt(TOWER_ID, appointment.locator, 99, receipt)

    tower = dbm.load_tower_record(TOWER_ID)
    assert tower.available_slots == 99
    assert tower.appointments == {appointment.locator: receipt}


def test_invalid_appointment_leaves_pending(dbm):
    add_tower(dbm)
    appointment = get_random_appointment()
    dbm.store_pending_appointment(TOWER_ID, appointment)

    dbm.store_invalid_appointment(TOWER_ID, appointment)

    assert dbm.load_pending_appointments(TOWER_ID) == []
    assert dbm.load_invalid_appointments(TOWER_ID) == [appointment]


def test_misbehaving_proof(dbm):
    add_tower(dbm)
    appointment = get_random_appointment()
    dbm.store_pending_appointment(TOWER_ID, appointment)
    sk, pk = crypto.generate_keypair()
    proof = MisbehaviorProof(appointment.locator, sign_receipt("usersig", 42, sk), pk.to_bytes().hex())

    dbm.store_misbehaving_proof(TOWER_ID, proof)

    assert dbm.load_pending_appointments(TOWER_ID) == []
    assert dbm.load_misbehaving_proof(TOWER_ID) == proof
    assert dbm.load_tower_record(TOWER_ID).get_summary().misbehaving


def test_remove_tower(dbm):
    add_tower(dbm)
    add_tower(dbm, OTHER_TOWER_ID)
    appointment = get_random_appointment()
    dbm.store_pending_appointment(TOWER_ID, appointment)
    dbm.store_invalid_appointment(TOWER_ID, get_random_appointment())
    dbm.store_pending_appointment(OTHER_TOWER_ID, appointment)

    dbm.remove_tower(TOWER_ID)

    assert dbm.load_tower_record(TOWER_ID) is None
    assert dbm.load_pending_appointments(TOWER_ID) == []
    assert dbm.load_invalid_appointments(TOWER_ID) == []
    assert dbm.load_pending_appointments(OTHER_TOWER_ID) == [appointment]
    assert list(dbm.load_towers()) == [OTHER_TOWER_ID]


def test_data_survives_a_restart(db_path):
    dbm = DBM(db_path)
    add_tower(dbm, status=TowerStatus.TEMPORARY_UNREACHABLE)
    appointment = get_random_appointment()
    dbm.store_pending_appointment(TOWER_ID, appointment)
    dbm.close()

    dbm = DBM(db_path)
    tower = dbm.load_tower_record(TOWER_ID)
    assert tower.status is TowerStatus.TEMPORARY_UNREACHABLE
    assert tower.pending_appointments == [appointment]
    dbm.close()


def test_default_logger(dbm, db_path):
    assert dbm.logger is logging.getLogger("pyln.wtclient.dbm")

    custom = logging.getLogger("watchtower-client")
    other = DBM(db_path, logger=custom)
    assert other.logger is custom
    other.close()
