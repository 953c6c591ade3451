"""Test compose field normalizers and config hashing."""

from reconcile_engine.core.hashing import bundle_hash, sha256_bytes
from reconcile_engine.core.models import FileRole, IacFile, RenderedService
from reconcile_engine.render.normalize import (
    normalize_command,
    normalize_env_files,
    normalize_environment,
    normalize_ports,
    normalize_volumes,
)

from conftest import running


class TestNormalizers:
    """Test canonical forms of compose fields."""

    def test_ports_short_and_long(self):
        """Test short and long port syntax normalize to the same strings."""
        short = normalize_ports(["8080:80", "127.0.0.1:5353:53/udp", "9000", "0.0.0.0:443:443"])
        assert short == ("8080:80/tcp", "127.0.0.1:5353:53/udp", "9000/tcp", "443:443/tcp")

        long_form = normalize_ports([
            {"target": 80, "published": 8080},
            {"target": 53, "published": "5353", "host_ip": "127.0.0.1", "protocol": "udp"},
        ])
        assert long_form == ("8080:80/tcp", "127.0.0.1:5353:53/udp")

    def test_volumes(self):
        """Test relative binds become absolute; ro flag is kept."""
        vols = normalize_volumes(
            ["./data:/data", "named:/var/lib:ro", "/anon",
             {"type": "bind", "source": "./conf", "target": "/etc/app", "read_only": True}],
            project_dir="/srv/stack",
        )
        assert vols == ("/srv/stack/data:/data", "named:/var/lib:ro", "/anon", "/srv/stack/conf:/etc/app:ro")

    def test_environment_forms(self):
        """Test list and dict environment forms, with fallback for bare keys."""
        assert normalize_environment(["A=1", "B", "C=x=y"], fallback={"B": "2"}) == {
            "A": "1", "B": "2", "C": "x=y",
        }
        assert normalize_environment({"A": 1, "B": True, "C": None}) == {"A": "1", "B": "true"}

    def test_command(self):
        """Test shell-form strings are split like compose does."""
        assert normalize_command("python -m app --name 'a b'") == ("python", "-m", "app", "--name", "a b")
        assert normalize_command(["a", 1]) == ("a", "1")
        assert normalize_command(None) is None

    def test_env_files(self):
        """Test env_file string, list and mapping forms."""
        assert normalize_env_files("a.env") == ["a.env"]
        assert normalize_env_files(["a.env", {"path": "b.env", "required": False}]) == ["a.env", "b.env"]


class TestConfigHasher:
    """Test hashing stability and comparability."""

    def _service(self, **overrides):
        fields = dict(
            service_name="web",
            image="nginx:1.25",
            container_name="myproj-web-1",
            env={"A": "1", "B": "2"},
            ports=("8080:80/tcp", "443:443/tcp"),
            volumes=("data:/data",),
            command=("nginx", "-g", "daemon off;"),
        )
        fields.update(overrides)
        return RenderedService(**fields)

    def test_order_independent(self, hasher):
        """Test map and list ordering never changes the hash."""
        a = self._service()
        b = self._service(env={"B": "2", "A": "1"}, ports=("443:443/tcp", "8080:80/tcp"))
        assert hasher.hash_service(a) == hasher.hash_service(b)

    def test_command_order_matters(self, hasher):
        """Test argv order is significant."""
        a = self._service()
        b = self._service(command=("-g", "nginx", "daemon off;"))
        assert hasher.hash_service(a) != hasher.hash_service(b)

    def test_each_field_counts(self, hasher):
        """Test every hashed field changes the hash."""
        base = hasher.hash_service(self._service())
        for change in (
            {"image": "nginx:1.26"},
            {"env": {"A": "1"}},
            {"ports": ("8080:80/tcp",)},
            {"volumes": ()},
            {"entrypoint": ("/docker-entrypoint.sh",)},
        ):
            assert hasher.hash_service(self._service(**change)) != base

    def test_incidental_fields_ignored(self, hasher):
        """Test names and pull policy are not hashed."""
        base = hasher.hash_service(self._service())
        assert hasher.hash_service(self._service(container_name="other", pull_policy="always")) == base

    def test_service_and_container_comparable(self, hasher):
        """Test a container with the same config hashes identically."""
        svc = self._service()
        container = running(
            "myproj-web-1", svc.image,
            env=dict(svc.env), ports=svc.ports, volumes=svc.volumes, command=svc.command,
        )
        assert hasher.hash_container(container) == hasher.hash_service(svc)

    def test_stable_value(self, hasher):
        """Test the hash is a deterministic sha256 hex digest."""
        h = hasher.hash_service(self._service())
        assert len(h) == 64
        assert h == hasher.hash_service(self._service())


class TestBundleHash:
    """Test the file-set hash."""

    def test_order_independent(self):
        """Test file order does not matter but content does."""
        a = IacFile("docker-compose.yml", FileRole.COMPOSE, sha256=sha256_bytes(b"x"))
        b = IacFile(".env", FileRole.ENV, sha256=sha256_bytes(b"y"))
        assert bundle_hash([a, b]) == bundle_hash([b, a])

        c = IacFile(".env", FileRole.ENV, sha256=sha256_bytes(b"z"))
        assert bundle_hash([a, c]) != bundle_hash([a, b])
