from __future__ import annotations

from botocore.exceptions import ClientError

from docker_mirror.errors import DockerError


class FakeEcrClient:
    def __init__(self, pages=None, fail_create=False):
        self.pages = list(pages or [{"repositories": []}])
        self.created = []
        self.describe_calls = []
        self.fail_create = fail_create

    def create_repository(self, repositoryName):
        if self.fail_create:
            raise ClientError({"Error": {"Code": "AccessDenied", "Message": "nope"}}, "CreateRepository")
        self.created.append(repositoryName)
        return {"repository": {"repositoryName": repositoryName}}

    def describe_repositories(self, **params):
        self.describe_calls.append(params)
        return self.pages[len(self.describe_calls) - 1]


class FakeDocker:
    def __init__(self, fail=None):
        self.calls = []
        self.fail = fail or {}

    def _record(self, action, *args):
        self.calls.append((action, *args))
        if args and self.fail.get(action) == args[0]:
            raise DockerError(f"{action} failed for {args[0]}", return_code=1)

    def login(self, registry, credentials, log=None):
        self.calls.append(("login", registry, credentials.username))

    def pull(self, repository, tag, log=None):
        self._record("pull", f"{repository}:{tag}")

    def tag(self, source, target, log=None):
        self._record("tag", source, target)

    def push(self, repository, tag, log=None):
        self._record("push", f"{repository}:{tag}")

    def remove(self, image, log=None):
        self._record("remove", image)

    def actions(self, name):
        return [call[1:] for call in self.calls if call[0] == name]


class FakeRegistry:
    def __init__(self, tags):
        self.tags = tags
        self.requested = []

    def fetch_tags(self, repo, log=None):
        self.requested.append(repo)
        if isinstance(self.tags, Exception):
            raise self.tags
        return list(self.tags)
