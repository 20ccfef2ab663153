"""Data models for Ocea resident portal API responses and exporter state."""

from pydantic import BaseModel, BeforeValidator, Field
from typing import Annotated, ClassVar, Optional, List, Tuple
from datetime import datetime, timezone


# Token validity margin (seconds)
TOKEN_EXPIRY_SKEW = 10

# Informative fields the portal sometimes sends as null. Readings used for
# reconciliation (year-to-date, device index) stay strict.
LenientFloat = Annotated[float, BeforeValidator(lambda v: 0.0 if v is None else v)]
LenientStr = Annotated[str, BeforeValidator(lambda v: "" if v is None else v)]


class OceaModel(BaseModel):
    """Base for models mapped on the portal's JSON.

    The portal speaks French; attributes are English and the JSON keys are
    kept as aliases so payloads round-trip unchanged into the state file.
    """

    class Config:
        populate_by_name = True


# =============================================================================
# Authentication
# =============================================================================

class Credentials(BaseModel):
    """Portal username/password pair."""

    username: str
    password: str = Field(repr=False)

    class Config:
        frozen = True


class TokenSet(BaseModel):
    """OAuth2 token pair returned by the B2C token endpoint.

    Azure B2C reports all timing fields in seconds, sometimes as strings;
    pydantic coerces them to int.
    """

    access_token: str = ""
    id_token: str = ""
    token_type: str = "Bearer"
    not_before: int = 0  # epoch seconds
    expires_in: int = 0
    expires_on: int = 0  # epoch seconds
    resource: str = ""
    client_info: str = ""
    scope: str = ""
    refresh_token: str = ""
    refresh_token_expires_in: int = 0

    def access_valid(self, now: float) -> bool:
        """Check if the access token can still be used."""
        return bool(self.access_token) and now < self.expires_on - TOKEN_EXPIRY_SKEW

    def refresh_valid(self, now: float) -> bool:
        """Check if a refresh exchange may still be attempted."""
        return bool(self.refresh_token) and (
            now < self.not_before + self.refresh_token_expires_in - TOKEN_EXPIRY_SKEW
        )


# =============================================================================
# Vendor API Models
# =============================================================================

class Occupation(OceaModel):
    """Link between a resident and a unit ("logement")."""

    site_code: Optional[str] = Field(default=None, alias="codeSite")
    start_date: Optional[str] = Field(default=None, alias="dateDebut")
    end_date: Optional[str] = Field(default=None, alias="dateFin")
    local_id: str = Field(alias="logementId")
    resident_id: Optional[str] = Field(default=None, alias="residentId")
    occupation_type: Optional[str] = Field(default=None, alias="typeOccupation")


class ResidentProfile(OceaModel):
    """Identity of the account holder."""

    id: LenientStr = ""
    civility: Optional[str] = Field(default=None, alias="civilite")
    last_name: Optional[str] = Field(default=None, alias="nom")
    first_name: Optional[str] = Field(default=None, alias="prenom")
    email: Optional[str] = None
    phone: Optional[str] = Field(default=None, alias="telephone")
    last_connection: Optional[str] = Field(default=None, alias="dateLastConnection")


class Resident(OceaModel):
    """Response of GET /resident."""

    client_code: LenientStr = Field(default="", alias="codeClient")
    client_name: LenientStr = Field(default="", alias="nomClient")
    occupations: List[Occupation] = Field(default_factory=list)
    resident: ResidentProfile = Field(default_factory=ResidentProfile)


class Address(OceaModel):
    """Postal address of a unit."""

    postal_code: Optional[str] = Field(default=None, alias="codePostal")
    complement: Optional[str] = None
    street: Optional[str] = Field(default=None, alias="numeroRue")
    country: Optional[str] = Field(default=None, alias="pays")
    city: Optional[str] = Field(default=None, alias="ville")


class LocalUnit(OceaModel):
    """A unit (apartment, shop...) as described by the portal."""

    id: str
    address: Address = Field(default_factory=Address, alias="adresse")
    building: Optional[str] = Field(default=None, alias="batiment")
    site_code: Optional[str] = Field(default=None, alias="codeSite")
    floor: Optional[str] = Field(default=None, alias="etage")
    identification: Optional[str] = Field(default=None, alias="identificationLocal")
    lot_number: Optional[str] = Field(default=None, alias="numeroLot")
    door_number: Optional[str] = Field(default=None, alias="numeroPorte")
    client_reference: Optional[str] = Field(default=None, alias="referenceClient")
    share: Optional[float] = Field(default=None, alias="tantieme")
    type: Optional[str] = None
    usage: Optional[str] = None


class Fluid(OceaModel):
    """A fluid the unit is billed for (EauFroide, EauChaude, Cetc...)."""

    fluid: str = Field(alias="fluide")
    distribution_type: Optional[str] = Field(default=None, alias="typeDistribution")
    reading_type: Optional[str] = Field(default=None, alias="typeReleve")


class Local(OceaModel):
    """Response of GET /local/{id}."""

    fluids: List[Fluid] = Field(default_factory=list, alias="fluidesRestitues")
    local: LocalUnit


class Dashboard(OceaModel):
    """Per-fluid consumption summary (GET /local/{id}/conso/dashboard/{fluid})."""

    fluid: str = Field(alias="fluide")
    local_id: Optional[str] = Field(default=None, alias="localId")
    average: LenientFloat = Field(default=0.0, alias="consoMoyenne")
    last_month: LenientFloat = Field(default=0.0, alias="consoDernierMois")
    year_to_date: float = Field(default=0.0, alias="consoCumuleeAnneeCourante")
    unit: Optional[str] = Field(default=None, alias="unite")
    current_month: LenientFloat = Field(default=0.0, alias="consoMoisCourant")
    last_reading_date: Optional[str] = Field(default=None, alias="dateDerniereReleve")


class Device(OceaModel):
    """A physical meter and its absolute reading at `date`."""

    device_id: str = Field(alias="appareilId")
    date: Optional[str] = None
    location: Optional[str] = Field(default=None, alias="emplacement")
    fluid: str = Field(alias="fluide")
    serial_number: LenientStr = Field(default="", alias="numeroCompteurAppareil")
    unit: Optional[str] = Field(default=None, alias="unite")
    index: float = Field(default=0.0, alias="valeurIndex")


class MaintenanceResponse(BaseModel):
    """Body returned by the API gateway while the portal is in maintenance."""

    IsOnline: bool = False
    MaintenancePageUrl: Optional[str] = None
    ErrorMessage: Optional[str] = None

    MARKER_KEYS: ClassVar[Tuple[str, ...]] = ("IsOnline", "MaintenancePageUrl")

    @classmethod
    def from_body(cls, body) -> Optional["MaintenanceResponse"]:
        """Return the parsed payload if `body` looks like a maintenance notice."""
        if not isinstance(body, dict):
            return None
        if not any(key in body for key in cls.MARKER_KEYS):
            return None
        try:
            return cls(**body)
        except ValueError:
            return None


# =============================================================================
# Exporter State
# =============================================================================

class CounterState(OceaModel):
    """Reconciled counter for one fluid.

    Remembers the pair (absolute_index, annual_index): the cumulative meter
    value at a given time and the year-to-date value observed at that same
    time. With t2 > t1:

        absolute(t2) = absolute(t1) + (ytd(t2) - ytd(t1))

    The year-to-date value is kept so the January reset can be detected.
    """

    fluid: str
    serial_number: str = Field(default="", alias="serialNumber")
    absolute_index: float = Field(default=0.0, alias="absoluteIndex")
    annual_index: float = Field(default=0.0, alias="annualIndex")


class AccountSnapshot(OceaModel):
    """Reference data fetched during bootstrap."""

    resident: Resident
    local: Local
    dashboards: List[Dashboard] = Field(default_factory=list)
    devices: List[Device] = Field(default_factory=list)

    @property
    def local_id(self) -> str:
        return self.local.local.id

    @property
    def fluids(self) -> List[str]:
        return [f.fluid for f in self.local.fluids]


class PersistedState(OceaModel):
    """Everything written to the state file."""

    counter_states: List[CounterState] = Field(default_factory=list, alias="counterStates")
    account_data: Optional[AccountSnapshot] = Field(default=None, alias="accountData")

    @property
    def is_bootstrapped(self) -> bool:
        return self.account_data is not None and bool(self.account_data.local_id)


class Notification(BaseModel):
    """Snapshot of the counters handed to listeners.

    Always built from deep copies so listeners never hold a reference into
    the fetcher's state.
    """

    local_id: str
    counter_states: List[CounterState]
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    class Config:
        frozen = True

    @classmethod
    def from_states(cls, local_id: str, states: List[CounterState]) -> "Notification":
        return cls(
            local_id=local_id,
            counter_states=[state.model_copy(deep=True) for state in states],
        )
