#!/usr/bin/env python3
"""
CLI tool for the GuestBook operator
Provides a kubectl-like interface over the operator's HTTP API
"""

import json

import click
import requests
import yaml
from tabulate import tabulate

from reconciler import DEFAULT_REPLICAS

API_BASE_URL = "http://localhost:8000/api/v1"


class GuestBookCLI:
    """CLI client for the GuestBook operator API"""

    def __init__(self, base_url: str = API_BASE_URL):
        self.base_url = base_url.rstrip("/")

    def _make_request(self, method: str, endpoint: str, **kwargs):
        """Make HTTP request to the API"""
        url = f"{self.base_url}{endpoint}"
        try:
            response = requests.request(method, url, timeout=30, **kwargs)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as e:
            click.echo(f"Error: {e}", err=True)
            if hasattr(e, "response") and e.response is not None:
                try:
                    error_detail = e.response.json()
                    click.echo(f"Detail: {error_detail}", err=True)
                except ValueError:
                    click.echo(f"Response: {e.response.text}", err=True)
            return None


def load_manifests(filename):
    """Read GuestBook manifests from a YAML (multi-document) or JSON file"""
    with open(filename, "r") as f:
        if filename.endswith(".yaml") or filename.endswith(".yml"):
            documents = [doc for doc in yaml.safe_load_all(f) if doc]
        else:
            data = json.load(f)
            documents = data if isinstance(data, list) else [data]

    for doc in documents:
        if not isinstance(doc, dict):
            raise click.ClickException("Manifest must be a mapping")
        kind = doc.get("kind", "GuestBook")
        if kind != "GuestBook":
            raise click.ClickException(f"Unsupported kind: {kind}")
        if "name" not in (doc.get("metadata") or {}):
            raise click.ClickException("Manifest is missing metadata.name")
    return documents


def echo_data(data, output):
    if output == "yaml":
        click.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=False))
    else:
        click.echo(json.dumps(data, indent=2))


@click.group()
@click.option(
    "--server",
    "-s",
    envvar="GBCTL_SERVER",
    default=API_BASE_URL,
    show_default=True,
    help="Operator API base URL",
)
@click.pass_context
def cli(ctx, server):
    """GuestBook operator CLI - kubectl-like interface for GuestBook resources"""
    ctx.obj = GuestBookCLI(server)


@cli.command()
@click.option(
    "--filename", "-f", type=click.Path(exists=True), required=True, help="Manifest"
)
@click.pass_obj
def apply(client, filename):
    """Create or update GuestBooks from a YAML/JSON manifest"""
    for doc in load_manifests(filename):
        metadata = doc["metadata"]
        namespace = metadata.get("namespace") or "default"
        body = {"spec": doc.get("spec") or {}}
        if metadata.get("labels"):
            body["labels"] = metadata["labels"]

        result = client._make_request(
            "PUT",
            f"/namespaces/{namespace}/guestbooks/{metadata['name']}",
            json=body,
        )
        if result:
            click.echo(f"guestbook/{result['name']} configured")


@cli.command()
@click.argument("kind", type=click.Choice(["guestbooks", "deployments"]))
@click.option("--namespace", "-n", default=None, help="Limit to one namespace")
@click.option(
    "--output", "-o", type=click.Choice(["table", "json", "yaml"]), default="table"
)
@click.pass_obj
def get(client, kind, namespace, output):
    """List GuestBooks or Deployments"""
    params = {"namespace": namespace} if namespace else {}
    result = client._make_request("GET", f"/{kind}", params=params)
    if result is None:
        return

    if output != "table":
        echo_data(result, output)
        return

    if kind == "guestbooks":
        headers = ["Namespace", "Name", "Replicas", "Version"]
        rows = [
            [
                gb["namespace"],
                gb["name"],
                "default" if gb["replicas"] is None else gb["replicas"],
                gb["resource_version"],
            ]
            for gb in result
        ]
    else:
        headers = ["Namespace", "Name", "Replicas", "Image", "Version"]
        rows = []
        for deployment in result:
            containers = deployment["spec"]["template"]["containers"]
            rows.append(
                [
                    deployment["metadata"]["namespace"],
                    deployment["metadata"]["name"],
                    deployment["spec"]["replicas"],
                    ", ".join(c["image"] for c in containers),
                    deployment["metadata"]["resource_version"],
                ]
            )

    click.echo(tabulate(rows, headers=headers, tablefmt="simple"))


@cli.command()
@click.argument("kind", type=click.Choice(["guestbook", "deployment"]))
@click.argument("name")
@click.option("--namespace", "-n", default="default")
@click.option("--output", "-o", type=click.Choice(["json", "yaml"]), default="yaml")
@click.pass_obj
def describe(client, kind, name, namespace, output):
    """Show a single GuestBook or Deployment"""
    result = client._make_request("GET", f"/namespaces/{namespace}/{kind}s/{name}")
    if result:
        echo_data(result, output)


@cli.command()
@click.argument("name")
@click.option("--namespace", "-n", default="default")
@click.confirmation_option(prompt="Are you sure you want to delete this GuestBook?")
@click.pass_obj
def delete(client, name, namespace):
    """Delete a GuestBook (its Deployment is garbage collected)"""
    result = client._make_request("DELETE", f"/namespaces/{namespace}/guestbooks/{name}")

    if result:
        click.echo(f"guestbook/{name} deleted")


@cli.command()
@click.argument("name")
@click.option("--namespace", "-n", default="default")
@click.pass_obj
def reconcile(client, name, namespace):
    """Manually trigger reconciliation for a GuestBook"""
    result = client._make_request(
        "POST", f"/namespaces/{namespace}/guestbooks/{name}/reconcile"
    )

    if result:
        click.echo("Reconciliation triggered successfully")


@cli.command()
@click.argument("name")
@click.option("--namespace", "-n", default="default")
@click.pass_obj
def status(client, name, namespace):
    """Compare a GuestBook's desired replicas with its Deployment"""
    guestbook = client._make_request("GET", f"/namespaces/{namespace}/guestbooks/{name}")
    if not guestbook:
        return

    click.echo(f"GuestBook: {namespace}/{name}")
    desired = guestbook["replicas"]
    expected = DEFAULT_REPLICAS if desired is None else desired
    if desired is None:
        click.echo(f"Desired replicas: {expected} (default)")
    else:
        click.echo(f"Desired replicas: {expected}")

    deployment = client._make_request(
        "GET", f"/namespaces/{namespace}/deployments/{name}"
    )
    if not deployment:
        click.echo("\n⚠️  Deployment not created yet (reconciliation pending)")
        return

    actual = deployment["spec"]["replicas"]
    click.echo(f"Deployment replicas: {actual}")
    if actual != expected:
        click.echo("\n⚠️  Deployment is out of sync (reconciliation pending)")
    else:
        click.echo("\n✓ Deployment is up to date")


if __name__ == "__main__":
    cli()
