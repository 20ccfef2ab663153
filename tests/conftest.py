"""Shared fixtures: portal payloads and a fake API client."""

from datetime import date, timedelta
from typing import Dict, List, Optional

import pytest

from ocea_exporter.config import Settings
from ocea_exporter.models import Dashboard, Device, Local, Resident

TODAY = date(2024, 3, 15)
LOCAL_ID = "8b5a1c3e-local"

FLUIDS = ["EauFroide", "EauChaude", "Cetc"]
SERIALS = {"EauFroide": "WF-001", "EauChaude": "WC-002", "Cetc": "HT-003"}


def resident_payload(local_ids=(LOCAL_ID,)) -> dict:
    return {
        "codeClient": "C042",
        "nomClient": "Residence des Lilas",
        "occupations": [
            {"logementId": local_id, "residentId": "r-1", "typeOccupation": "Locataire"}
            for local_id in local_ids
        ],
        "resident": {"id": "r-1", "nom": "Martin", "prenom": "Alice", "email": "alice@example.org"},
    }


def local_payload(fluids=FLUIDS) -> dict:
    return {
        "fluidesRestitues": [{"fluide": fluid, "typeReleve": "Radio"} for fluid in fluids],
        "local": {
            "id": LOCAL_ID,
            "adresse": {"codePostal": "75011", "ville": "Paris", "numeroRue": "12 rue des Lilas"},
            "etage": "3",
            "numeroPorte": "31",
        },
    }


def dashboard_payload(fluid: str, year_to_date: float) -> dict:
    return {
        "fluide": fluid,
        "localId": LOCAL_ID,
        "consoMoyenne": 1.2,
        "consoDernierMois": 3.4,
        "consoCumuleeAnneeCourante": year_to_date,
        "unite": "m3",
        "consoMoisCourant": 0.5,
        "dateDerniereReleve": "2024-03-14T00:00:00",
    }


def device_payload(fluid: str, index: float, device_id: Optional[str] = None, day: date = TODAY) -> dict:
    return {
        "appareilId": device_id or f"dev-{fluid}",
        "date": f"{day.isoformat()}T00:00:00",
        "emplacement": "Cuisine",
        "fluide": fluid,
        "numeroCompteurAppareil": SERIALS.get(fluid, f"SN-{fluid}"),
        "unite": "m3",
        "valeurIndex": index,
    }


def make_dashboard(fluid: str, year_to_date: float) -> Dashboard:
    return Dashboard.model_validate(dashboard_payload(fluid, year_to_date))


def make_device(fluid: str, index: float, device_id: Optional[str] = None) -> Device:
    return Device.model_validate(device_payload(fluid, index, device_id))


class FakeOceaClient:
    """In-memory stand-in for OceaClient.

    Dashboards are given as fluid -> year-to-date values, devices as
    day -> list of device payloads. Set `error` to make every call raise.
    `dashboard_fluids` maps a requested fluid to the one reported back by
    the next dashboard call for it.
    """

    def __init__(
        self,
        resident: Optional[dict] = None,
        local: Optional[dict] = None,
        year_to_date: Optional[Dict[str, float]] = None,
        devices: Optional[Dict[date, List[dict]]] = None,
    ):
        self.resident = resident or resident_payload()
        self.local = local or local_payload()
        self.year_to_date = year_to_date or {"EauFroide": 10.0, "EauChaude": 4.0, "Cetc": 120.0}
        self.devices = devices if devices is not None else {
            TODAY: [
                device_payload("EauFroide", 510.0),
                device_payload("EauChaude", 204.0),
                device_payload("Cetc", 3120.0),
            ]
        }
        self.dashboard_fluids: Dict[str, str] = {}
        self.error: Optional[BaseException] = None
        self.calls: List[tuple] = []

    def _check(self, *call):
        self.calls.append(call)
        if self.error is not None:
            raise self.error

    async def get_resident(self) -> Resident:
        self._check("resident")
        return Resident.model_validate(self.resident)

    async def get_local(self, local_id: str) -> Local:
        self._check("local", local_id)
        return Local.model_validate(self.local)

    async def get_fluid_dashboard(self, local_id: str, fluid: str) -> Dashboard:
        self._check("dashboard", local_id, fluid)
        return make_dashboard(self.dashboard_fluids.pop(fluid, fluid), self.year_to_date[fluid])

    async def get_devices(self, local_id: str, statement_date: Optional[date] = None) -> List[Device]:
        self._check("devices", local_id, statement_date)
        return [Device.model_validate(d) for d in self.devices.get(statement_date, [])]


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        OCEA_USERNAME="alice@example.org",
        OCEA_PASSWORD="s3cret",
        STATE_FILE_PATH=str(tmp_path / "state" / "state.json"),
        POLL_INTERVAL=0,
        CRASH_BACKOFF=0,
        RECONCILE_STRATEGY="annual",
    )


@pytest.fixture
def fake_client() -> FakeOceaClient:
    return FakeOceaClient()


@pytest.fixture
def yesterday() -> date:
    return TODAY - timedelta(days=1)
