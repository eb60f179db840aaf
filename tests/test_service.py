"""End-to-end tests for the users HTTP API."""

from __future__ import annotations

import inspect
import unittest
from unittest import mock

import mongomock
from fastapi.routing import APIRoute
from fastapi.testclient import TestClient
from pymongo.errors import ServerSelectionTimeoutError

from users_api.database import Database
from users_api.service import MAX_PAGE, create_app

MISSING_ID = "64b7f0c2a1b2c3d4e5f60718"


class UsersServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.database = Database(client=mongomock.MongoClient(), database_name="users-tests")
        self.app = create_app(database=self.database)
        self._client_context = TestClient(self.app)
        self.client = self._client_context.__enter__()

    def tearDown(self) -> None:
        self._client_context.__exit__(None, None, None)

    def _create(self, **payload: object) -> dict:
        response = self.client.post("/users", json=payload)
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()

    def test_healthcheck(self) -> None:
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})

    def test_create_user_defaults_roles(self) -> None:
        created = self._create(name="Alice", email="a@x.com")

        self.assertEqual(created["roles"], ["user"])
        self.assertEqual(created["name"], "Alice")
        self.assertIn("id", created)
        self.assertIn("createdAt", created)
        self.assertNotIn("__v", created)

        stored = self.database.get_user(created["id"])
        self.assertIsNotNone(stored)
        self.assertEqual(stored.roles, ["user"])

    def test_create_user_with_address(self) -> None:
        created = self._create(
            name="Bob",
            email="bob@x.com",
            age=33,
            roles=["admin"],
            address={"city": "Oslo", "zip": "0150"},
        )

        self.assertEqual(created["age"], 33)
        self.assertEqual(created["roles"], ["admin"])
        self.assertEqual(created["address"], {"city": "Oslo", "zip": "0150"})

    def test_duplicate_email_returns_client_error(self) -> None:
        self._create(name="Alice", email="a@x.com")

        duplicate = self.client.post("/users", json={"name": "Alicia", "email": "a@x.com"})

        self.assertEqual(duplicate.status_code, 400, duplicate.text)
        self.assertIn("error", duplicate.json())
        self.assertEqual(self.database.collection.count_documents({}), 1)

    def test_negative_age_returns_client_error(self) -> None:
        response = self.client.post("/users", json={"name": "Kid", "email": "kid@x.com", "age": -1})

        self.assertEqual(response.status_code, 400, response.text)
        self.assertIn("age", response.json()["error"])
        self.assertEqual(self.database.collection.count_documents({}), 0)

    def test_missing_required_fields_return_client_error(self) -> None:
        response = self.client.post("/users", json={"email": "noname@x.com"})
        self.assertEqual(response.status_code, 400, response.text)
        self.assertIn("name", response.json()["error"])

        blank = self.client.post("/users", json={"name": "  ", "email": "blank@x.com"})
        self.assertEqual(blank.status_code, 400, blank.text)

    def test_unknown_fields_are_rejected(self) -> None:
        response = self.client.post(
            "/users",
            json={"name": "Eve", "email": "eve@x.com", "isAdmin": True},
        )
        self.assertEqual(response.status_code, 400, response.text)

    def test_list_users_second_page(self) -> None:
        for index in range(1, 16):
            self._create(name=f"User {index:02d}", email=f"user{index}@x.com")

        response = self.client.get("/users", params={"limit": 10, "page": 2})

        self.assertEqual(response.status_code, 200, response.text)
        names = [user["name"] for user in response.json()]
        self.assertEqual(names, [f"User {index:02d}" for index in range(11, 16)])

    def test_list_users_defaults_to_ten_sorted_by_name(self) -> None:
        for index in range(12, 0, -1):
            self._create(name=f"Member {index:02d}", email=f"member{index}@x.com")

        response = self.client.get("/users")

        self.assertEqual(response.status_code, 200, response.text)
        names = [user["name"] for user in response.json()]
        self.assertEqual(names, [f"Member {index:02d}" for index in range(1, 11)])

    def test_list_users_by_role(self) -> None:
        self._create(name="Root", email="root@x.com", roles=["admin", "user"])
        self._create(name="Plain", email="plain@x.com")

        response = self.client.get("/users", params={"role": "admin"})

        self.assertEqual(response.status_code, 200, response.text)
        users = response.json()
        self.assertEqual([user["name"] for user in users], ["Root"])
        for user in users:
            self.assertIn("admin", user["roles"])

    def test_list_users_by_name_substring(self) -> None:
        self._create(name="Alice", email="alice@x.com")
        self._create(name="ALIBABA", email="alibaba@x.com")
        self._create(name="Bob", email="bob@x.com")

        response = self.client.get("/users", params={"q": "ali"})

        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(sorted(user["name"] for user in response.json()), ["ALIBABA", "Alice"])

    def test_list_users_by_min_age(self) -> None:
        self._create(name="Teen", email="teen@x.com", age=15)
        self._create(name="Adult", email="adult@x.com", age=25)
        self._create(name="Unknown", email="unknown@x.com")

        response = self.client.get("/users", params={"minAge": 25})

        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual([user["name"] for user in response.json()], ["Adult"])

    def test_list_users_rejects_invalid_paging(self) -> None:
        for params in ({"limit": 0}, {"limit": 1000}, {"page": 0}, {"limit": "ten"}):
            response = self.client.get("/users", params=params)
            self.assertEqual(response.status_code, 400, (params, response.text))
            self.assertIn("error", response.json())

    def test_list_users_empty_page(self) -> None:
        self._create(name="Solo", email="solo@x.com")

        response = self.client.get("/users", params={"page": 5})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), [])

    def test_get_user(self) -> None:
        created = self._create(name="Alice", email="a@x.com")

        response = self.client.get(f"/users/{created['id']}")

        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json(), created)

    def test_get_user_with_malformed_id(self) -> None:
        response = self.client.get("/users/not-an-id")

        self.assertEqual(response.status_code, 400, response.text)
        self.assertIn("ObjectId", response.json()["error"])

    def test_patch_changes_only_supplied_fields(self) -> None:
        created = self._create(
            name="Alice",
            email="a@x.com",
            age=20,
            roles=["editor"],
            address={"city": "Rome", "zip": "00100"},
        )

        response = self.client.patch(f"/users/{created['id']}", json={"age": 30})

        self.assertEqual(response.status_code, 200, response.text)
        updated = response.json()
        self.assertEqual(updated["age"], 30)
        self.assertEqual({**created, "age": 30}, updated)

    def test_patch_rejects_invalid_values(self) -> None:
        created = self._create(name="Alice", email="a@x.com")

        for payload in ({"age": -5}, {"name": None}, {"name": ""}, {"createdAt": "2020-01-01T00:00:00Z"}):
            response = self.client.patch(f"/users/{created['id']}", json=payload)
            self.assertEqual(response.status_code, 400, (payload, response.text))

        unchanged = self.client.get(f"/users/{created['id']}").json()
        self.assertEqual(unchanged, created)

    def test_patch_rejects_email_collision(self) -> None:
        self._create(name="Alice", email="a@x.com")
        bob = self._create(name="Bob", email="b@x.com")

        response = self.client.patch(f"/users/{bob['id']}", json={"email": "a@x.com"})

        self.assertEqual(response.status_code, 400, response.text)

    def test_patch_with_malformed_id(self) -> None:
        response = self.client.patch("/users/123", json={"age": 1})
        self.assertEqual(response.status_code, 400, response.text)

    def test_missing_user_returns_not_found(self) -> None:
        for method, kwargs in (
            ("get", {}),
            ("patch", {"json": {"age": 30}}),
            ("delete", {}),
        ):
            response = self.client.request(method.upper(), f"/users/{MISSING_ID}", **kwargs)
            self.assertEqual(response.status_code, 404, (method, response.text))
            self.assertEqual(response.json(), {"error": "Not found"})

    def test_delete_user(self) -> None:
        created = self._create(name="Alice", email="a@x.com")

        deleted = self.client.delete(f"/users/{created['id']}")
        self.assertEqual(deleted.status_code, 200, deleted.text)
        self.assertEqual(deleted.json(), {"message": "Deleted", "id": created["id"]})

        follow = self.client.get(f"/users/{created['id']}")
        self.assertEqual(follow.status_code, 404)

        again = self.client.delete(f"/users/{created['id']}")
        self.assertEqual(again.status_code, 404)
        self.assertEqual(again.json(), {"error": "Not found"})

    def test_delete_with_malformed_id(self) -> None:
        response = self.client.delete("/users/xyz")
        self.assertEqual(response.status_code, 400, response.text)


    def test_create_user_with_null_roles_gets_default_role(self) -> None:
        created = self._create(name="Alice", email="a@x.com", roles=None)

        self.assertEqual(created["roles"], ["user"])

    def test_out_of_range_age_returns_json_client_error(self) -> None:
        too_big = 10**20

        response = self.client.post("/users", json={"name": "A", "email": "a@x.com", "age": too_big})
        self.assertEqual(response.status_code, 400, response.text)
        self.assertIn("age", response.json()["error"])
        self.assertEqual(self.database.collection.count_documents({}), 0)

        created = self._create(name="B", email="b@x.com", age=5)
        patched = self.client.patch(f"/users/{created['id']}", json={"age": too_big})
        self.assertEqual(patched.status_code, 400, patched.text)
        self.assertIn("age", patched.json()["error"])
        self.assertEqual(self.client.get(f"/users/{created['id']}").json()["age"], 5)

    def test_store_encoding_failure_returns_client_error(self) -> None:
        with mock.patch.object(
            self.database.collection,
            "insert_one",
            side_effect=OverflowError("MongoDB can only handle up to 8-byte ints"),
        ):
            response = self.client.post("/users", json={"name": "A", "email": "a@x.com"})

        self.assertEqual(response.status_code, 400, response.text)
        self.assertEqual(response.json(), {"error": "MongoDB can only handle up to 8-byte ints"})

    def test_page_beyond_skip_range_is_rejected(self) -> None:
        response = self.client.get("/users", params={"page": MAX_PAGE + 1})
        self.assertEqual(response.status_code, 400, response.text)
        self.assertIn("page", response.json()["error"])

        last = self.client.get("/users", params={"page": MAX_PAGE, "limit": 100})
        self.assertEqual(last.status_code, 200, last.text)
        self.assertEqual(last.json(), [])

    def test_store_failure_on_list_returns_server_error(self) -> None:
        created = self._create(name="Alice", email="a@x.com")
        failure = ServerSelectionTimeoutError("boom")

        with mock.patch.object(self.database, "list_users", side_effect=failure):
            listing = self.client.get("/users")
        self.assertEqual(listing.status_code, 500, listing.text)
        self.assertEqual(listing.json(), {"error": "boom"})

        with mock.patch.object(self.database, "get_user", side_effect=failure):
            single = self.client.get(f"/users/{created['id']}")
        self.assertEqual(single.status_code, 400, single.text)
        self.assertEqual(single.json(), {"error": "boom"})

    def test_list_users_sorts_by_several_keys(self) -> None:
        self._create(name="Sam", email="sam1@x.com", age=20)
        self._create(name="Sam", email="sam2@x.com", age=40)
        self._create(name="Ann", email="ann@x.com", age=30)

        response = self.client.get("/users", params={"sort": "name -age"})

        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(
            [(user["name"], user["age"]) for user in response.json()],
            [("Ann", 30), ("Sam", 40), ("Sam", 20)],
        )

        rejected = self.client.get("/users", params={"sort": "name,name"})
        self.assertEqual(rejected.status_code, 400, rejected.text)

    def test_user_routes_run_in_threadpool(self) -> None:
        user_routes = [
            route
            for route in self.app.routes
            if isinstance(route, APIRoute) and route.path.startswith("/users")
        ]
        self.assertEqual(len(user_routes), 5)
        for route in user_routes:
            self.assertFalse(inspect.iscoroutinefunction(route.endpoint), route.path)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
