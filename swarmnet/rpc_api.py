# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.

import abc

from swarmnet.jsonrpc import RpcModule

METHOD_PREFIX = "ledger_"

# Gateway control
EXECUTE_TRANSACTION = METHOD_PREFIX + "executeTransaction"

# Read
GET_OBJECTS_OWNED_BY_ADDRESS = METHOD_PREFIX + "getObjectsOwnedByAddress"
GET_OBJECT = METHOD_PREFIX + "getObject"
GET_TOTAL_TRANSACTION_NUMBER = METHOD_PREFIX + "getTotalTransactionNumber"
GET_TRANSACTIONS_IN_RANGE = METHOD_PREFIX + "getTransactionsInRange"
GET_RECENT_TRANSACTIONS = METHOD_PREFIX + "getRecentTransactions"
GET_TRANSACTION = METHOD_PREFIX + "getTransaction"

# Transaction building
TRANSFER_OBJECT = METHOD_PREFIX + "transferObject"
SPLIT_COIN = METHOD_PREFIX + "splitCoin"
MERGE_COINS = METHOD_PREFIX + "mergeCoins"

# Wallet sync
SYNC_ACCOUNT_STATE = METHOD_PREFIX + "syncAccountState"


class _GatewayApi(abc.ABC):
    def __init__(self, client):
        self.client = client

    @abc.abstractmethod
    def methods(self):
        pass

    def into_rpc(self) -> RpcModule:
        module = RpcModule()
        for name, fn in self.methods().items():
            module.register_method(name, fn)
        return module


class RpcGatewayImpl(_GatewayApi):
    """Gateway control: submit signed transactions."""

    def execute_transaction(self, tx_bytes, signature, pub_key):
        return self.client.execute_transaction(tx_bytes, signature, pub_key)

    def methods(self):
        return {EXECUTE_TRANSACTION: self.execute_transaction}


class GatewayReadApiImpl(_GatewayApi):
    def methods(self):
        return {
            GET_OBJECTS_OWNED_BY_ADDRESS: self.client.get_objects_owned_by_address,
            GET_OBJECT: self.client.get_object,
            GET_TOTAL_TRANSACTION_NUMBER: self.client.get_total_transaction_number,
            GET_TRANSACTIONS_IN_RANGE: self.client.get_transactions_in_range,
            GET_RECENT_TRANSACTIONS: self.client.get_recent_transactions,
            GET_TRANSACTION: self.client.get_transaction,
        }


class TransactionBuilderImpl(_GatewayApi):
    """Build unsigned transaction bytes for the client to sign."""

    def methods(self):
        return {
            TRANSFER_OBJECT: self.client.transfer_object,
            SPLIT_COIN: self.client.split_coin,
            MERGE_COINS: self.client.merge_coins,
        }


class GatewayWalletSyncApiImpl(_GatewayApi):
    def sync_account_state(self, address):
        self.client.sync_account_state(address)

    def methods(self):
        return {SYNC_ACCOUNT_STATE: self.sync_account_state}
