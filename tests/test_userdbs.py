import pytest

from couchlogin.config import UserDBSettings
from couchlogin.service.errors import UpstreamStoreFailure
from couchlogin.service.userdbs import DatabaseAccessCoordinator, legal_db_name
from couchlogin.storage.models import PersonalDB, SessionEntry, UserRecord

from conftest import Stack, make_settings


def _userdb_settings(**raw):
    return UserDBSettings.model_validate(raw)


def _coordinator(settings: UserDBSettings) -> DatabaseAccessCoordinator:
    return DatabaseAccessCoordinator(None, None, None, settings)


def test_legal_db_name_escapes_everything_but_alnum_and_underscore():
    assert legal_db_name("My.Name@x.com") == "my(2e)name(40)x(2e)com"
    assert legal_db_name("joe_smith") == "joe_smith"
    assert legal_db_name("a-b~c") == "a(2d)b(7e)c"


def test_physical_name_private_and_shared():
    coordinator = _coordinator(_userdb_settings(private_prefix="p"))
    assert coordinator.physical_name("Bob.S", "notes", "private") == "p_notes$bob(2e)s"
    assert coordinator.physical_name("bob", "team", "shared") == "team"


def test_compute_config_uses_named_model_over_default():
    coordinator = _coordinator(
        _userdb_settings(
            default_security_roles={"admins": ["admin"], "members": ["member"]},
            model={
                "notes": {
                    "permissions": ["_reader"],
                    "design_docs": ["notes"],
                    "admin_roles": ["owner"],
                    "type": "shared",
                },
                "_default": {"permissions": ["_writer"], "design_docs": ["base"]},
            },
            delete_with_user={"shared": True},
        )
    )
    config = coordinator.compute_database_config("notes")
    assert config.type == "shared"
    assert config.permissions == ["_reader"]
    assert config.design_docs == ["notes"]
    assert config.admin_roles == ["admin", "owner"]
    assert config.member_roles == ["member"]
    assert config.delete_with_user is True


def test_compute_config_default_design_docs_only_for_private():
    coordinator = _coordinator(
        _userdb_settings(model={"_default": {"permissions": ["_writer"], "design_docs": ["base"]}})
    )
    private = coordinator.compute_database_config("scratch")
    shared = coordinator.compute_database_config("scratch", "shared")
    assert private.design_docs == ["base"]
    assert private.permissions == ["_writer"]
    assert shared.design_docs == []
    assert shared.type == "shared"


def test_effective_permissions_precedence():
    coordinator = _coordinator(
        _userdb_settings(
            model={
                "notes": {"permissions": ["_reader"]},
                "_default": {"permissions": ["_writer"]},
            }
        )
    )
    assert coordinator.effective_permissions(PersonalDB("notes", permissions=["x"])) == ["x"]
    assert coordinator.effective_permissions(PersonalDB("notes")) == ["_reader"]
    assert coordinator.effective_permissions(PersonalDB("other")) == ["_writer"]


async def test_provision_authorizes_live_sessions_only(clock):
    stack = await Stack(make_settings(), clock).setup()
    now = clock()
    user = UserRecord(
        id="alice",
        roles=["user"],
        session={
            "live": SessionEntry(issued=now, refreshed=now, expires=now + 60_000),
            "dead": SessionEntry(issued=now - 10, refreshed=now - 10, expires=now - 1),
        },
    )
    name = await stack.coordinator.provision_user_database(
        user, "notes", member_roles=["member"]
    )
    assert name == "notes$alice"
    security = await stack.security(name)
    assert security["members"]["names"] == ["live"]
    assert security["members"]["roles"] == ["member"]


async def test_provision_is_repeatable(clock):
    stack = await Stack(make_settings(), clock).setup()
    user = UserRecord(id="alice")
    await stack.coordinator.provision_user_database(user, "notes")
    assert await stack.coordinator.provision_user_database(user, "notes") == "notes$alice"


async def test_remove_database_tolerates_missing(clock):
    stack = await Stack(make_settings(), clock).setup()
    await stack.coordinator.create_database("tmp")
    assert await stack.coordinator.remove_database("tmp") is True
    assert await stack.coordinator.remove_database("tmp") is False


async def test_authorize_and_deauthorize_across_databases(clock):
    stack = await Stack(make_settings(), clock).setup()
    user = UserRecord(id="alice")
    first = await stack.coordinator.provision_user_database(user, "notes")
    second = await stack.coordinator.provision_user_database(user, "photos")
    user.personal_dbs = {first: PersonalDB("notes"), second: PersonalDB("photos")}
    await stack.coordinator.authorize_user_across_databases(user.id, user.personal_dbs, ["k1", "k2"])
    assert await stack.member_names(first) == ["k1", "k2"]
    assert await stack.member_names(second) == ["k1", "k2"]
    await stack.coordinator.deauthorize_user_across_databases(user, ["k1"])
    assert await stack.member_names(first) == ["k2"]
    assert await stack.member_names(second) == ["k2"]


async def test_authorize_across_databases_stops_at_first_failure(clock):
    stack = await Stack(make_settings(), clock).setup()
    user = UserRecord(id="alice")
    names = [
        await stack.coordinator.provision_user_database(user, db)
        for db in ("alpha", "beta", "gamma")
    ]
    user.personal_dbs = {
        names[0]: PersonalDB("alpha"),
        names[1]: PersonalDB("beta"),
        names[2]: PersonalDB("gamma"),
    }
    await stack.server.destroy_database(names[1])

    with pytest.raises(UpstreamStoreFailure):
        await stack.coordinator.authorize_user_across_databases(user.id, user.personal_dbs, ["k1"])

    assert await stack.member_names(names[0]) == ["k1"]
    assert await stack.member_names(names[2]) == []
