import pytest
from bson import ObjectId

from ledger import TransactionAccessLayer, LedgerEngine, NotFoundError, InvalidInputError, parse_object_id
from tests.conftest import OWNER_ID, OTHER_USER_ID, insert_project, insert_party


class TestParseObjectId:

    def test_valid_hex(self):
        oid = ObjectId()
        assert parse_object_id(str(oid)) == oid
        assert parse_object_id(oid) is oid

    @pytest.mark.parametrize("bad", ["123", "zzzzzzzzzzzzzzzzzzzzzzzz", None])
    def test_malformed(self, bad):
        with pytest.raises(InvalidInputError) as exc_info:
            parse_object_id(bad, "project ID")
        assert exc_info.value.message == "Invalid project ID format"


class TestTransactionAccessLayer:

    async def test_owned_project_ids(self, db):
        mine = await insert_project(db, code="A")
        await insert_project(db, owner_id=OTHER_USER_ID, code="B")

        ids = await TransactionAccessLayer(db).list_owned_project_ids(OWNER_ID)
        assert ids == [str(mine["_id"])]

    async def test_foreign_project_looks_missing(self, db):
        theirs = await insert_project(db, owner_id=OTHER_USER_ID)
        access = TransactionAccessLayer(db)

        with pytest.raises(NotFoundError) as exc_info:
            await access.resolve_owned_project(OWNER_ID, str(theirs["_id"]))
        assert exc_info.value.message == "Project not found"
        assert exc_info.value.status_code == 404

    async def test_party_must_belong_to_project(self, db, project):
        other = await insert_project(db, code="OTHER")
        stray = await insert_party(db, other, "Stray", "VENDOR")

        with pytest.raises(NotFoundError):
            await TransactionAccessLayer(db).resolve_project_party(str(project["_id"]), str(stray["_id"]))

    async def test_transaction_resolution_follows_ownership(self, db, engine, project, client_party):
        tx = await engine.create_transaction(
            str(project["_id"]), str(client_party["_id"]), "income", 10, OWNER_ID
        )
        access = TransactionAccessLayer(db)

        found = await access.resolve_owned_transaction(OWNER_ID, str(tx["_id"]))
        assert found["_id"] == tx["_id"]

        with pytest.raises(NotFoundError):
            await access.resolve_owned_transaction(OTHER_USER_ID, str(tx["_id"]))

    async def test_ownership_filter(self, db, project):
        access = TransactionAccessLayer(db)

        scoped = await access.ownership_filter(OWNER_ID, str(project["_id"]))
        assert scoped == {"is_deleted": False, "project_id": str(project["_id"])}

        spanning = await access.ownership_filter(OWNER_ID)
        assert spanning == {"is_deleted": False, "project_id": {"$in": [str(project["_id"])]}}
