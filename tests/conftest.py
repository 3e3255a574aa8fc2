# Copyright 2025 Gowtham Rao <rao@ohdsi.org>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Shared FHIR sample documents for the test suite."""

import json

import pytest

PZN_SYSTEM = "http://fhir.de/CodeSystem/ifa/pzn"

PRESCRIPTION_XML = """<?xml version="1.0" encoding="UTF-8"?>
<Bundle xmlns="http://hl7.org/fhir">
  <id value="0428d416-149e-48a4-977c-394887b3d85c"/>
  <type value="document"/>
  <timestamp value="2023-05-01T10:15:00+02:00"/>
  <entry>
    <resource>
      <MedicationRequest>
        <authoredOn value="2023-04-30"/>
      </MedicationRequest>
    </resource>
  </entry>
  <entry>
    <resource>
      <Medication>
        <code>
          <coding>
            <system value="http://fhir.de/CodeSystem/ifa/pzn"/>
            <code value="08585997"/>
          </coding>
          <coding>
            <system value="http://fhir.de/CodeSystem/ifa/PZN"/>
            <code value="08585997"/>
          </coding>
          <coding>
            <system value="http://snomed.info/sct"/>
            <code value="763158003"/>
          </coding>
          <text value="Prospan Hustensaft 100ml"/>
        </code>
      </Medication>
    </resource>
  </entry>
  <entry>
    <resource>
      <Medication>
        <extension url="https://example.org/ingredient">
          <valueCoding>
            <system value="http://fhir.de/CodeSystem/ifa/pzn"/>
            <code value="00427063"/>
          </valueCoding>
        </extension>
      </Medication>
    </resource>
  </entry>
</Bundle>
"""

MALFORMED_XML = "<Bundle><entry><resource></entry></Bundle>"


def prescription_json(code: str | None = "12345678", authored_on: str | None = "2023-05-01") -> str:
    """Build a small FHIR JSON bundle with one MedicationRequest."""
    request: dict = {"resourceType": "MedicationRequest", "status": "active"}
    if authored_on is not None:
        request["authoredOn"] = authored_on
    if code is not None:
        request["medicationCodeableConcept"] = {
            "coding": [{"system": PZN_SYSTEM, "code": code, "display": "Ibuprofen 400"}],
        }
    bundle = {
        "resourceType": "Bundle",
        "type": "document",
        "entry": [{"resource": request}],
    }
    return json.dumps(bundle)


@pytest.fixture
def prescription_xml() -> str:
    return PRESCRIPTION_XML


@pytest.fixture
def prescription_json_text() -> str:
    return prescription_json()


@pytest.fixture
def make_prescription_json():
    return prescription_json


@pytest.fixture
def malformed_xml() -> str:
    return MALFORMED_XML
